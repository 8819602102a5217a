"""
Unit tests for the compile endpoints.

Tests cover:
- POST /compile request validation and response shape
- POST /compile-multiple request validation and batching
- Mapping of service errors to HTTP responses
- Upload cleanup around every compile
"""

from pathlib import Path

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from alfa_service.compiler.output import CompiledFile
from alfa_service.core.errors import (
    CompilationError,
    CompileTimeoutError,
    ConnectionClosedError,
    NotReadyError,
)
from alfa_service.main import create_app
from alfa_service.services.uploads import PolicyUploadStore
from tests.fakes import INVALID_POLICY, VALID_POLICY, FakeOrchestrator

ARTIFACT = CompiledFile(
    file_name="acme.readDocuments.xml",
    content='<xacml3:Policy PolicyId="acme.readDocuments">\n  <xacml3:Target/>\n</xacml3:Policy>',
)


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator(output=[ARTIFACT])


@pytest.fixture
def uploads(tmp_path: Path) -> Path:
    return tmp_path / "policies"


@pytest.fixture
def client(orchestrator: FakeOrchestrator, uploads: Path) -> TestClient:
    app = create_app(
        orchestrator=orchestrator, upload_store=PolicyUploadStore(uploads), autostart=False
    )
    return TestClient(app, raise_server_exceptions=False)


def post_text(client: TestClient, body: str | bytes, content_type: str = "text/plain"):
    return client.post("/compile", content=body, headers={"Content-Type": content_type})


# ============================================================================
# POST /compile
# ============================================================================


class TestCompileSingle:
    """Tests for POST /compile."""

    @pytest.mark.anyio
    async def test_success(self, client, orchestrator, uploads):
        response = post_text(client, VALID_POLICY)

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {
            "success": True,
            "output": [{"fileName": ARTIFACT.file_name, "content": ARTIFACT.content}],
        }
        assert orchestrator.compiled == [("single", [VALID_POLICY])]

    @pytest.mark.anyio
    async def test_upload_is_removed_and_deletion_notified(self, client, orchestrator, uploads):
        post_text(client, VALID_POLICY)

        assert list(uploads.iterdir()) == []
        assert len(orchestrator.deleted) == 1
        assert orchestrator.deleted[0].name.endswith("-policy.alfa")

    @pytest.mark.anyio
    async def test_charset_parameter_is_accepted(self, client):
        response = post_text(client, VALID_POLICY, "text/plain; charset=utf-8")
        assert response.status_code == status.HTTP_200_OK

    @pytest.mark.anyio
    async def test_wrong_content_type(self, client, orchestrator):
        response = post_text(client, VALID_POLICY, "application/json")

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Content-Type must be text/plain"}
        assert orchestrator.compiled == []

    @pytest.mark.anyio
    @pytest.mark.parametrize("body", ["", "   \n\t"])
    async def test_empty_body(self, client, orchestrator, body):
        response = post_text(client, body)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Empty file content"}
        assert orchestrator.compiled == []

    @pytest.mark.anyio
    async def test_non_utf8_body(self, client):
        response = post_text(client, b"\xff\xfe\x00")
        assert response.status_code == status.HTTP_400_BAD_REQUEST

    @pytest.mark.anyio
    async def test_get_is_not_allowed(self, client):
        response = client.get("/compile")

        assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
        assert response.json() == {"error": "Method Not Allowed. Use POST."}

    @pytest.mark.anyio
    async def test_compilation_errors_are_returned_verbatim(self, orchestrator, client, uploads):
        message = "Compilation failed with errors:\nLine 3, Col 9: mismatched input 'ERROR'"
        orchestrator.error = CompilationError(message)

        response = post_text(client, INVALID_POLICY)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": message}
        assert list(uploads.iterdir()) == []


# ============================================================================
# POST /compile-multiple
# ============================================================================


class TestCompileMultiple:
    """Tests for POST /compile-multiple."""

    @pytest.mark.anyio
    async def test_files_are_compiled_as_one_batch(self, client, orchestrator, uploads):
        response = client.post(
            "/compile-multiple",
            json={
                "files": [
                    {"fileName": "attributes.alfa", "content": "namespace acme { }"},
                    {"fileName": "policies.alfa", "content": VALID_POLICY},
                ]
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["output"][0]["fileName"] == ARTIFACT.file_name
        assert orchestrator.compiled == [("multiple", ["namespace acme { }", VALID_POLICY])]
        assert list(uploads.iterdir()) == []
        assert len(orchestrator.deleted) == 2

    @pytest.mark.anyio
    async def test_single_entry_uses_single_compile(self, client, orchestrator):
        response = client.post(
            "/compile-multiple",
            json={"files": [{"fileName": "policies.alfa", "content": VALID_POLICY}]},
        )

        assert response.status_code == status.HTTP_200_OK
        assert orchestrator.compiled[0][0] == "single"

    @pytest.mark.anyio
    async def test_wrong_content_type(self, client):
        response = client.post(
            "/compile-multiple", content="files", headers={"Content-Type": "text/plain"}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Content-Type must be application/json"}

    @pytest.mark.anyio
    async def test_empty_body(self, client):
        response = client.post(
            "/compile-multiple", content=b"", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Empty content"}

    @pytest.mark.anyio
    async def test_invalid_json(self, client):
        response = client.post(
            "/compile-multiple",
            content="{files: nope",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Invalid JSON body"}

    @pytest.mark.anyio
    @pytest.mark.parametrize("payload", [{}, {"files": []}, {"files": "a.alfa"}, []])
    async def test_no_files(self, client, orchestrator, payload):
        response = client.post("/compile-multiple", json=payload)

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "No files provided"}
        assert orchestrator.compiled == []

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        "entry",
        [
            {"content": VALID_POLICY},
            {"fileName": "a.alfa"},
            {"fileName": "", "content": VALID_POLICY},
            {"fileName": "   ", "content": VALID_POLICY},
            {"fileName": "a.alfa", "content": ""},
            "a.alfa",
        ],
    )
    async def test_incomplete_file_entry(self, client, orchestrator, uploads, entry):
        response = client.post(
            "/compile-multiple",
            json={"files": [{"fileName": "ok.alfa", "content": VALID_POLICY}, entry]},
        )

        assert response.status_code == status.HTTP_400_BAD_REQUEST
        assert response.json() == {"error": "Each file must have a filename and content"}
        assert orchestrator.compiled == []
        assert not uploads.exists() or list(uploads.iterdir()) == []

    @pytest.mark.anyio
    async def test_put_is_not_allowed(self, client):
        response = client.put("/compile-multiple", json={"files": []})

        assert response.status_code == status.HTTP_405_METHOD_NOT_ALLOWED
        assert response.json() == {"error": "Method Not Allowed. Use POST."}


# ============================================================================
# Error mapping
# ============================================================================


class TestErrorMapping:
    """Tests for service errors surfacing through the routes."""

    @pytest.mark.anyio
    @pytest.mark.parametrize(
        ("error", "expected_status"),
        [
            (NotReadyError("Language server is not initialized."), 503),
            (ConnectionClosedError("Language server connection closed"), 503),
            (CompileTimeoutError("Compilation did not finish within 30s"), 504),
        ],
    )
    async def test_service_errors(self, orchestrator, client, error, expected_status):
        orchestrator.error = error

        response = post_text(client, VALID_POLICY)

        assert response.status_code == expected_status
        assert response.json() == {"error": error.message}

    @pytest.mark.anyio
    async def test_unexpected_error_is_generic(self, orchestrator, client):
        orchestrator.error = RuntimeError("disk on fire at /var/secret")

        response = post_text(client, VALID_POLICY)

        assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
        assert response.json() == {"error": "An unexpected error occurred"}

    @pytest.mark.anyio
    async def test_oversized_upload(self, client, orchestrator):
        response = post_text(client, "x" * (1024 * 1024 + 1))

        assert response.status_code == status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
        assert orchestrator.compiled == []
