"""
Stand-in for the ALFA language server used by the integration tests.

Speaks LSP over stdio and mimics the behaviour the service relies on:

- ``initialize`` answers with a small capability set (or an error when
  ``FAKE_LS_FAIL_INITIALIZE`` is set)
- after ``initialized`` it sends a ``workspace/configuration`` request and
  a ``window/logMessage`` notification
- ``workspace/didChangeWatchedFiles`` compiles each changed file:
  a line containing ``ERROR`` produces an error diagnostic at that
  position, ``WARN`` a warning; a file without errors gets one XACML
  artifact per ``policy`` written to ``--output-dir``
- a file containing ``CRASH`` makes the process exit immediately
"""

import argparse
import json
import os
import re
import sys
from pathlib import Path
from urllib.parse import urlparse
from urllib.request import url2pathname

NAMESPACE = re.compile(r"namespace\s+([\w.]+)")
POLICY = re.compile(r"\bpolicy\s+(\w+)")

XACML_TEMPLATE = (
    '<?xml version="1.0" encoding="UTF-8"?>\n'
    '<xacml3:Policy xmlns:xacml3="urn:oasis:names:tc:xacml:3.0:core:schema:wd-17" '
    'PolicyId="http://axiomatics.com/alfa/identifier/{qualified}" Version="1.0">\n'
    "      <xacml3:Description/>\n"
    "   <xacml3:Target/>\n"
    "</xacml3:Policy>\n"
)


def read_message(stream):
    length = None
    while True:
        line = stream.readline()
        if not line:
            return None
        line = line.rstrip(b"\r\n")
        if not line:
            if length is None:
                continue
            break
        name, _, value = line.partition(b":")
        if name.strip().lower() == b"content-length":
            length = int(value.strip())
    return json.loads(stream.read(length).decode("utf-8"))


def write_message(stream, message):
    body = json.dumps(message).encode("utf-8")
    stream.write(f"Content-Length: {len(body)}\r\n\r\n".encode("ascii") + body)
    stream.flush()


def diagnostic(line, column, length, message, severity):
    return {
        "range": {
            "start": {"line": line, "character": column},
            "end": {"line": line, "character": column + length},
        },
        "severity": severity,
        "source": "alfa",
        "message": message,
    }


def check(content):
    found = []
    for number, text in enumerate(content.splitlines()):
        column = text.find("ERROR")
        if column >= 0:
            found.append(diagnostic(number, column, 5, "mismatched input 'ERROR'", 1))
        column = text.find("WARN")
        if column >= 0:
            found.append(diagnostic(number, column, 4, "Deprecated construct", 2))
    return found


def generate(content, output_dir):
    namespace = NAMESPACE.search(content)
    prefix = namespace.group(1) if namespace else "default"
    for policy in POLICY.findall(content):
        qualified = f"{prefix}.{policy}"
        (output_dir / f"{qualified}.xml").write_text(
            XACML_TEMPLATE.format(qualified=qualified), encoding="utf-8"
        )


def publish(out, uri, diagnostics):
    write_message(
        out,
        {
            "jsonrpc": "2.0",
            "method": "textDocument/publishDiagnostics",
            "params": {"uri": uri, "diagnostics": diagnostics},
        },
    )


def handle_changes(out, changes, output_dir):
    for change in changes:
        uri = change["uri"]
        if change["type"] == 3:
            publish(out, uri, [])
            continue
        path = Path(url2pathname(urlparse(uri).path))
        content = path.read_text(encoding="utf-8")
        if "CRASH" in content:
            os._exit(3)
        diagnostics = check(content)
        publish(out, uri, diagnostics)
        if not any(d["severity"] == 1 for d in diagnostics):
            output_dir.mkdir(parents=True, exist_ok=True)
            generate(content, output_dir)


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--output-dir", required=True)
    args = parser.parse_args()
    output_dir = Path(args.output_dir)

    stdin = sys.stdin.buffer
    stdout = sys.stdout.buffer
    while True:
        message = read_message(stdin)
        if message is None:
            return 0
        method = message.get("method")
        if method is None:
            continue
        if method == "initialize":
            if os.environ.get("FAKE_LS_FAIL_INITIALIZE"):
                write_message(
                    stdout,
                    {
                        "jsonrpc": "2.0",
                        "id": message["id"],
                        "error": {"code": -32002, "message": "workspace rejected"},
                    },
                )
                continue
            write_message(
                stdout,
                {
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "result": {"capabilities": {"textDocumentSync": 1, "hoverProvider": True}},
                },
            )
        elif method == "initialized":
            write_message(
                stdout,
                {
                    "jsonrpc": "2.0",
                    "id": "fake-1",
                    "method": "workspace/configuration",
                    "params": {"items": [{"section": "alfa"}]},
                },
            )
            write_message(
                stdout,
                {
                    "jsonrpc": "2.0",
                    "method": "window/logMessage",
                    "params": {"type": 3, "message": "ALFA workspace loaded"},
                },
            )
        elif method == "workspace/didChangeWatchedFiles":
            handle_changes(stdout, message["params"]["changes"], output_dir)
        elif method == "shutdown":
            write_message(stdout, {"jsonrpc": "2.0", "id": message["id"], "result": None})
        elif method == "exit":
            return 0
        elif "id" in message:
            write_message(
                stdout,
                {
                    "jsonrpc": "2.0",
                    "id": message["id"],
                    "error": {"code": -32601, "message": f"Unhandled method {method}"},
                },
            )


if __name__ == "__main__":
    sys.exit(main())
