"""
Order export parsers.
"""

from parsers.mhtml_parser import is_mhtml, decode_mhtml, MhtmlDocument, EmbeddedImage
from parsers.component_spec_parser import extract_component
from parsers.order_html_parser import (
    parse_order_document,
    read_order_document,
    stage_order_images,
    finish_order_parse,
    OrderParseResult,
)

__all__ = [
    "is_mhtml",
    "decode_mhtml",
    "MhtmlDocument",
    "EmbeddedImage",
    "extract_component",
    "parse_order_document",
    "read_order_document",
    "stage_order_images",
    "finish_order_parse",
    "OrderParseResult",
]
