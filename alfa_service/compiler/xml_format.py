"""
XML formatting for generated XACML artifacts.

The language server writes XACML in whatever layout it likes. Artifacts are
minified first and then re-indented, so the same policy always yields the
same text regardless of the server's own formatting.
"""

import re

_TAG_BOUNDARY = re.compile(r"(>)(<)(/*)")
_INLINE_ELEMENT = re.compile(r".+</\w[^>]*>$")
_CLOSING_TAG = re.compile(r"^</\w")
_OPENING_TAG = re.compile(r"^<\w[^>]*[^/]>.*$")

_INTER_TAG_WHITESPACE = re.compile(r">\s+<")
_LINE_PADDING = re.compile(r"^\s+|\s+$", re.MULTILINE)


def format_xml(xml: str, indent: int = 2) -> str:
    """
    Put adjacent tags on their own lines and indent nested elements.

    Args:
        xml: Raw XML string
        indent: Number of spaces per nesting level

    Returns:
        Formatted XML
    """
    padding = " " * indent
    formatted = _TAG_BOUNDARY.sub(r"\1\n\2\3", xml)

    depth = 0
    lines = []
    for line in formatted.split("\n"):
        step = 0
        if _INLINE_ELEMENT.search(line):
            step = 0
        elif _CLOSING_TAG.match(line) and depth > 0:
            depth -= 1
        elif _OPENING_TAG.match(line):
            step = 1
        lines.append(padding * depth + line)
        depth += step
    return "\n".join(lines)


def minify_xml(xml: str) -> str:
    """Remove whitespace between tags, line padding and newlines."""
    xml = _INTER_TAG_WHITESPACE.sub("><", xml)
    xml = _LINE_PADDING.sub("", xml)
    return xml.replace("\n", "")


def pretty_xml(xml: str, indent: int = 2) -> str:
    """Deterministic pretty-print: minify, then indent."""
    return format_xml(minify_xml(xml), indent)
