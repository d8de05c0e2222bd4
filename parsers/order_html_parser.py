"""
AliExpress order-history parser.

Parses the "My Orders" page saved from AliExpress (plain HTML or MHTML web
archive) into ParsedOrder records with nested items and component
candidates.

Recognition is selector based. A broken order block or item row is recorded
as a PartialParseWarning and skipped; its siblings still parse. Only input
that is not markup at all raises DocumentFormatError.
"""

from dataclasses import dataclass, field
from datetime import datetime
from threading import Event
from typing import Callable, Optional, Union
import hashlib
import re
import structlog

from bs4 import BeautifulSoup, Tag

from exceptions import DocumentFormatError, ImportCancelledError
from models.order_import import (
    DateRange,
    OrderStatus,
    ParsedOrder,
    ParsedOrderItem,
    PartialParseWarning,
    PreviewStatistics,
    ProgressStage,
)
from parsers.component_spec_parser import extract_component
from parsers.mhtml_parser import EmbeddedImage, MhtmlDocument, decode_mhtml, is_mhtml
from parsers.progress import ProgressReporter, ProgressSink

logger = structlog.get_logger(__name__)

# Constants
MIN_DOCUMENT_CHARS = 100
DEFAULT_SUPPLIER = "AliExpress"
SITE_ROOT = "https://www.aliexpress.com"
MAX_QUANTITY = 10000

ORDER_BLOCK_SELECTORS = (
    "div.order-item",
    ".order-list-item",
    ".order-item-wrap",
    ".order-card",
    "[data-order-number]",
    "[data-order-id]",
)
ITEM_ROW_SELECTORS = (
    ".order-item-content-body",
    ".order-item-product",
    ".product-item",
    ".item-row",
)
STATUS_SELECTORS = ".order-item-header-status-text, .order-status, .status-text"
STORE_SELECTORS = ".seller-name, .store-name, .shop-name"
DATE_SELECTORS = ".order-date, .date, .order-time"
ORDER_TOTAL_SELECTOR = ".order-item-content-opt-price-total"
GENERIC_TOTAL_SELECTORS = ".order-total, .total-price, .order-amount"
UNIT_PRICE_SELECTORS = ".order-item-content-info-number, .item-price, .product-price"
LINE_TOTAL_SELECTORS = ".item-total, .product-total, .line-total"
VARIATION_SELECTORS = ".order-item-content-info-sku, .sku-property, .variation"
SPEC_ROW_SELECTORS = ".spec-item, .property-item, .attribute"
IMAGE_PLACEHOLDER_MARKERS = ("placeholder", "loading", "blank.gif", "spacer")

ORDER_ID_PATTERN = re.compile(r"Order\s*(?:ID|No\.?|Number)\s*[:#]?\s*(\d{4,})", re.I)
ORDER_DATE_PATTERN = re.compile(
    r"Order\s*date\s*:?\s*([A-Z][a-z]{2,8}\.?\s+\d{1,2},?\s+\d{4})", re.I
)
NUMERIC_DATE_PATTERNS = (
    (re.compile(r"(\d{4}-\d{1,2}-\d{1,2})"), "%Y-%m-%d"),
    (re.compile(r"(\d{1,2}/\d{1,2}/\d{4})"), "%m/%d/%Y"),
    (re.compile(r"(\d{1,2}\.\d{1,2}\.\d{4})"), "%d.%m.%Y"),
)
TEXT_DATE_FORMATS = ("%b %d, %Y", "%B %d, %Y", "%b %d %Y", "%B %d %Y")
QUANTITY_PATTERN = re.compile(r"(?:^|\s|>)[xX×]\s*(\d+)\b|Qty\s*:?\s*(\d+)", re.I)
MONEY_PATTERN = re.compile(r"\d[\d,.]*")
BACKGROUND_URL_PATTERN = re.compile(r"background(?:-image)?\s*:\s*url\(\s*['\"]?([^'\")]+)['\"]?\s*\)", re.I)
ALICDN_SIZE_PATTERN = re.compile(r"_\d+x\d+(?=\.)")

# Checked in order; first match wins
STATUS_RULES: tuple[tuple[OrderStatus, tuple[str, ...]], ...] = (
    (OrderStatus.CANCELLED, ("cancelled", "canceled", "refunded", "refund", "closed")),
    (OrderStatus.DELIVERED, ("completed", "finished", "received", "delivered", "confirmed delivery")),
    (OrderStatus.PENDING, ("awaiting payment", "unpaid", "pending", "payment")),
    (OrderStatus.SHIPPED, ("awaiting delivery", "shipped", "sent", "transit", "dispatched")),
    (OrderStatus.ORDERED, ("to ship", "preparing", "processing", "confirmed", "placed")),
)

ImageStageFn = Callable[[Optional[str], str, Optional[EmbeddedImage]], Optional[str]]


@dataclass
class OrderParseResult:
    """Result of parsing one order export."""
    orders: list[ParsedOrder] = field(default_factory=list)
    warnings: list[PartialParseWarning] = field(default_factory=list)
    blocks_found: int = 0
    images_staged: int = 0
    archive: Optional[MhtmlDocument] = field(default=None, repr=False)

    @property
    def skipped_blocks(self) -> int:
        """Order blocks that yielded no order."""
        return sum(1 for w in self.warnings if w.scope == "order")

    @property
    def has_data(self) -> bool:
        return len(self.orders) > 0

    @property
    def total_items(self) -> int:
        return sum(len(o.items) for o in self.orders)

    def statistics(self) -> PreviewStatistics:
        """Aggregate figures for the preview header."""
        suppliers: list[str] = []
        for order in self.orders:
            if order.supplier not in suppliers:
                suppliers.append(order.supplier)

        dates = [o.order_date for o in self.orders if o.order_date is not None]
        return PreviewStatistics(
            total_orders=len(self.orders),
            total_items=self.total_items,
            total_value=round(sum(o.total_amount for o in self.orders), 2),
            suppliers=suppliers,
            date_range=DateRange(
                earliest=min(dates) if dates else None,
                latest=max(dates) if dates else None,
            ),
            skipped_blocks=self.skipped_blocks,
            warnings=[str(w) for w in self.warnings],
        )


def parse_order_document(
    content: Union[bytes, str],
    progress: Optional[ProgressSink] = None,
    cancel_event: Optional[Event] = None,
    stage_image: Optional[ImageStageFn] = None,
    reporter: Optional[ProgressReporter] = None,
) -> OrderParseResult:
    """
    Parse an AliExpress order export.

    Runs read_order_document, stage_order_images and finish_order_parse in
    one go. Callers that need a separate ceiling for image staging run the
    three steps themselves.

    Args:
        content: Uploaded HTML or MHTML document
        progress: Optional sink receiving ProgressEvents in order
        cancel_event: Checked between order blocks and between images
        stage_image: Optional best-effort thumbnail stager
        reporter: Pre-built reporter (overrides progress)

    Returns:
        OrderParseResult (possibly empty when no order blocks are found)

    Raises:
        DocumentFormatError: If the document is empty or not markup
        ImportCancelledError: If cancel_event is set mid-parse
    """
    reporter = reporter or ProgressReporter(progress)
    result = read_order_document(content, reporter, cancel_event)
    if stage_image is not None:
        stage_order_images(result, stage_image, reporter, cancel_event)
    return finish_order_parse(result, reporter)


def read_order_document(
    content: Union[bytes, str],
    reporter: ProgressReporter,
    cancel_event: Optional[Event] = None,
) -> OrderParseResult:
    """
    Load the document and structure its order blocks.

    Emits the parsing and structuring events. Images are not touched.
    """
    result = OrderParseResult()

    logger.info(
        "order_html_parse_started",
        content_type=type(content).__name__,
        size=len(content) if content else 0
    )

    if not content:
        raise DocumentFormatError("Uploaded document is empty")
    if is_mhtml(content):
        result.archive = decode_mhtml(content)
        html = result.archive.html
    else:
        html = _decode_document(content)

    if len(html.strip()) < MIN_DOCUMENT_CHARS:
        raise DocumentFormatError(
            "Document is too short to be an order export",
            details={"characters": len(html.strip())}
        )

    soup = BeautifulSoup(html, "html.parser")
    if soup.find() is None:
        raise DocumentFormatError("Document contains no HTML markup")

    reporter.emit(ProgressStage.PARSING, "Document loaded")

    blocks = _find_order_blocks(soup)
    result.blocks_found = len(blocks)
    reporter.emit(
        ProgressStage.PARSING,
        f"Found {len(blocks)} order blocks",
        orders_found=len(blocks)
    )

    if not blocks:
        logger.info("no_order_blocks_found", html_chars=len(html))

    for index, block in enumerate(blocks, start=1):
        _check_cancelled(cancel_event)
        try:
            order = _parse_order_block(block, index, result.warnings)
        except Exception as e:
            logger.warning("order_block_skipped", index=index, error=str(e), error_type=type(e).__name__)
            result.warnings.append(PartialParseWarning(scope="order", index=index, reason=str(e)))
            order = None

        if order is not None:
            result.orders.append(order)

        reporter.emit(
            ProgressStage.STRUCTURING,
            f"Processed order {index} of {len(blocks)}",
            orders_found=len(blocks),
            current_order=index,
            total_items=result.total_items
        )

    return result


def finish_order_parse(result: OrderParseResult, reporter: ProgressReporter) -> OrderParseResult:
    """Emit the complete event and return the result."""
    reporter.emit(
        ProgressStage.COMPLETE,
        f"Parsed {len(result.orders)} orders",
        orders_found=len(result.orders),
        current_order=len(result.orders),
        total_items=result.total_items,
        processed_items=result.total_items,
        images_staged=result.images_staged
    )

    logger.info(
        "order_html_parse_complete",
        orders=len(result.orders),
        items=result.total_items,
        skipped_blocks=result.skipped_blocks,
        warnings=len(result.warnings),
        images_staged=result.images_staged
    )
    return result


# ===================
# DOCUMENT LOADING
# ===================

def _decode_document(content: Union[bytes, str]) -> str:
    if isinstance(content, str):
        return content

    if content.startswith((b"\xff\xfe", b"\xfe\xff")):
        try:
            return content.decode("utf-16")
        except UnicodeDecodeError as e:
            raise DocumentFormatError("Document could not be decoded", details={"error": str(e)})

    # NUL bytes mean a binary file, not a web page
    if b"\x00" in content[:8192]:
        raise DocumentFormatError("Document is binary, expected HTML or MHTML")

    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        return content.decode("cp1252", errors="replace")


def _find_order_blocks(soup: BeautifulSoup) -> list[Tag]:
    """First selector with matches wins; nested matches are dropped."""
    for selector in ORDER_BLOCK_SELECTORS:
        found = soup.select(selector)
        if found:
            ids = {id(el) for el in found}
            return [
                el for el in found
                if not any(id(parent) in ids for parent in el.parents)
            ]

    # Single order detail page
    body = soup.body or soup
    if ORDER_ID_PATTERN.search(body.get_text(" ", strip=True)) and _find_item_rows(body):
        return [body]
    return []


def _find_item_rows(block: Tag) -> list[Tag]:
    for selector in ITEM_ROW_SELECTORS:
        rows = block.select(selector)
        if rows:
            return rows
    return []


def _check_cancelled(cancel_event: Optional[Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        logger.info("order_html_parse_cancelled")
        raise ImportCancelledError("preview")


# ===================
# ORDER FIELDS
# ===================

def _parse_order_block(
    block: Tag,
    index: int,
    warnings: list[PartialParseWarning],
) -> Optional[ParsedOrder]:
    text = block.get_text(" ", strip=True)
    order_number = _extract_order_number(block, text)

    rows = _find_item_rows(block)
    items: list[ParsedOrderItem] = []
    for item_index, row in enumerate(rows or [block], start=1):
        try:
            item = _parse_item(row)
        except Exception as e:
            logger.warning(
                "order_item_skipped",
                order_number=order_number,
                index=item_index,
                error=str(e)
            )
            warnings.append(PartialParseWarning(
                scope="item", index=item_index, order_number=order_number, reason=str(e)
            ))
            continue

        if item is None:
            if rows:
                warnings.append(PartialParseWarning(
                    scope="item", index=item_index, order_number=order_number,
                    reason="no product title"
                ))
            continue
        items.append(item)

    if not items:
        warnings.append(PartialParseWarning(
            scope="order", index=index, order_number=order_number,
            reason="no items found"
        ))
        return None

    store_name = _extract_store_name(block)
    total = _extract_order_total(block)
    if total is None:
        total = round(sum(i.total_price for i in items), 2)
        if total == 0:
            total = _first_price(block.select(GENERIC_TOTAL_SELECTORS)) or 0.0

    return ParsedOrder(
        order_number=order_number,
        supplier=(store_name or DEFAULT_SUPPLIER)[:100],
        seller_name=store_name,
        order_date=_extract_order_date(block, text),
        total_amount=total,
        status=normalize_status(_extract_status_text(block)),
        raw_snapshot_ref=_snapshot_ref(block),
        items=items,
    )


def _extract_order_number(block: Tag, text: str) -> str:
    m = ORDER_ID_PATTERN.search(text)
    if m:
        return m.group(1)

    for attr in ("data-order-id", "data-order-number"):
        value = block.get(attr)
        if not value:
            holder = block.select_one(f"[{attr}]")
            value = holder.get(attr) if holder else None
        if value:
            return str(value).strip()[:50]

    # Stable across re-uploads of the same page so duplicates are caught
    digest = hashlib.sha1(str(block).encode("utf-8")).hexdigest()[:12].upper()
    return f"AE-{digest}"


def _extract_order_date(block: Tag, text: str) -> Optional[datetime]:
    m = ORDER_DATE_PATTERN.search(text)
    if m:
        parsed = _parse_text_date(m.group(1))
        if parsed:
            return parsed

    date_el = block.select_one(DATE_SELECTORS)
    candidates = [date_el.get_text(" ", strip=True)] if date_el else []
    candidates.append(text)
    for candidate in candidates:
        parsed = _parse_text_date(candidate)
        if parsed:
            return parsed
        for pattern, fmt in NUMERIC_DATE_PATTERNS:
            nm = pattern.search(candidate)
            if nm:
                try:
                    return datetime.strptime(nm.group(1), fmt)
                except ValueError:
                    continue
    return None


def _parse_text_date(value: str) -> Optional[datetime]:
    cleaned = re.sub(r"\s+", " ", value.replace(".", "")).strip()
    for fmt in TEXT_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt)
        except ValueError:
            continue
    return None


def _extract_status_text(block: Tag) -> Optional[str]:
    el = block.select_one(STATUS_SELECTORS)
    return el.get_text(" ", strip=True) if el else None


def normalize_status(raw: Optional[str]) -> OrderStatus:
    """Map marketplace status wording onto OrderStatus; unknown -> ordered."""
    if not raw:
        return OrderStatus.ORDERED
    lowered = raw.lower()
    for status, phrases in STATUS_RULES:
        if any(p in lowered for p in phrases):
            return status
    return OrderStatus.ORDERED


def _extract_store_name(block: Tag) -> Optional[str]:
    el = block.select_one(".order-item-store-name span") or block.select_one(STORE_SELECTORS)
    if el is None:
        return None
    name = el.get_text(" ", strip=True)
    return name or None


def _extract_order_total(block: Tag) -> Optional[float]:
    el = block.select_one(ORDER_TOTAL_SELECTOR)
    if el is None:
        return None
    return _extract_price(el)


def _snapshot_ref(block: Tag) -> str:
    return "sha256:" + hashlib.sha256(str(block).encode("utf-8")).hexdigest()


# ===================
# ITEM FIELDS
# ===================

def _parse_item(row: Tag) -> Optional[ParsedOrderItem]:
    title = _extract_title(row)
    if not title:
        return None

    quantity = _extract_quantity(row)
    unit_price = _first_price(row.select(UNIT_PRICE_SELECTORS)) or 0.0
    line_total = _first_price(row.select(LINE_TOTAL_SELECTORS))
    if line_total is None:
        line_total = round(unit_price * quantity, 2)

    specifications = _extract_specifications(row)
    variation = _extract_variation(row)
    if variation and "Variation" not in specifications:
        specifications["Variation"] = variation

    return ParsedOrderItem(
        product_title=title,
        quantity=quantity,
        unit_price=unit_price,
        total_price=line_total,
        image_url=_extract_image_url(row),
        product_url=_extract_product_url(row),
        variation=variation,
        specifications=specifications,
        parsed_component=extract_component(title, specifications),
    )


def _extract_title(row: Tag) -> Optional[str]:
    el = row.select_one(".order-item-content-info-name span[title]")
    if el and el.get("title"):
        return _clean_text(el["title"])

    el = row.select_one(".order-item-content-info-name")
    if el and el.get_text(strip=True):
        return _clean_text(el.get_text(" ", strip=True))

    link = row.select_one('a[href*="item"]')
    if link is not None:
        title = link.get("title") or link.get_text(" ", strip=True)
        if title:
            return _clean_text(title)

    el = row.select_one(".item-title, .product-title, .product-name")
    if el and el.get_text(strip=True):
        return _clean_text(el.get_text(" ", strip=True))

    img = row.select_one("img[alt]")
    if img is not None and img.get("alt", "").strip():
        return _clean_text(img["alt"])
    return None


def _extract_quantity(row: Tag) -> int:
    el = row.select_one(".order-item-content-info-number-quantity")
    text = el.get_text(" ", strip=True) if el else row.get_text(" ", strip=True)
    m = QUANTITY_PATTERN.search(" " + text)
    if not m:
        return 1
    value = int(m.group(1) or m.group(2))
    return max(1, min(value, MAX_QUANTITY))


def _extract_price(el: Tag) -> Optional[float]:
    """Read a price, trying the marketplace's split-digit wrappers first."""
    for selector in ('[class*="es--wrap--"]', ".notranslate", '[class*="price"]', '[class*="amount"]'):
        inner = el.select_one(selector)
        if inner is not None:
            value = parse_money(inner.get_text(strip=True))
            if value is not None:
                return value
    return parse_money(el.get_text(strip=True))


def _first_price(elements: list[Tag]) -> Optional[float]:
    for el in elements:
        value = _extract_price(el)
        if value is not None:
            return value
    return None


def parse_money(text: Optional[str]) -> Optional[float]:
    """
    Parse a displayed amount like "US $1,234.56", "€12,50" or "$ 3".

    Returns:
        The amount, or None when the text holds no number
    """
    if not text:
        return None
    m = MONEY_PATTERN.search(text)
    if not m:
        return None
    raw = m.group(0).rstrip(".,")

    if "," in raw and "." in raw:
        # The later separator is the decimal mark
        if raw.rfind(",") > raw.rfind("."):
            raw = raw.replace(".", "").replace(",", ".")
        else:
            raw = raw.replace(",", "")
    elif "," in raw:
        head, _, tail = raw.rpartition(",")
        raw = f"{head.replace(',', '')}.{tail}" if len(tail) in (1, 2) else raw.replace(",", "")

    try:
        return round(float(raw), 2)
    except ValueError:
        return None


def _extract_image_url(row: Tag) -> Optional[str]:
    holder = row.select_one(".order-item-content-img")
    if holder is not None:
        m = BACKGROUND_URL_PATTERN.search(holder.get("style", ""))
        if m:
            url = normalize_image_url(m.group(1))
            if url:
                return url

    images = row.select('img[src*="alicdn"]') + row.select("img")
    for img in images:
        for attr in ("src", "data-src", "data-lazy-src", "data-original"):
            url = normalize_image_url(img.get(attr))
            if url:
                return url
    return None


def normalize_image_url(url: Optional[str]) -> Optional[str]:
    """Absolute, full-size thumbnail URL, or None for placeholders."""
    if not url:
        return None
    url = url.strip().replace("&quot;", "")
    if not url or url.startswith("data:"):
        return None
    if any(marker in url.lower() for marker in IMAGE_PLACEHOLDER_MARKERS):
        return None
    url = _absolute_url(url)
    if "alicdn" in url:
        url = ALICDN_SIZE_PATTERN.sub("_800x800", url)
    return url


def _extract_product_url(row: Tag) -> Optional[str]:
    link = row.select_one('a[href*="item"]')
    if link is None or not link.get("href"):
        return None
    return _absolute_url(link["href"].strip())


def _absolute_url(url: str) -> str:
    if url.startswith("//"):
        return "https:" + url
    if url.startswith("/"):
        return SITE_ROOT + url
    return url


def _extract_specifications(row: Tag) -> dict[str, str]:
    specs: dict[str, str] = {}
    for spec in row.select(SPEC_ROW_SELECTORS):
        label_el = spec.select_one(".spec-label, .property-name")
        value_el = spec.select_one(".spec-value, .property-value")
        if label_el is not None and value_el is not None:
            label = _clean_text(label_el.get_text(" ", strip=True)).rstrip(":")
            value = _clean_text(value_el.get_text(" ", strip=True))
        else:
            label, sep, value = spec.get_text(" ", strip=True).partition(":")
            if not sep:
                continue
            label, value = _clean_text(label), _clean_text(value)
        if label and value:
            specs[label] = value
    return specs


def _extract_variation(row: Tag) -> Optional[str]:
    el = row.select_one(VARIATION_SELECTORS)
    if el is None:
        return None
    text = _clean_text(el.get_text(" ", strip=True))
    return text or None


def _clean_text(value: str) -> str:
    return re.sub(r"\s+", " ", value).strip()


# ===================
# IMAGE STAGING
# ===================

def stage_order_images(
    result: OrderParseResult,
    stage_image: ImageStageFn,
    reporter: ProgressReporter,
    cancel_event: Optional[Event] = None,
    stop_event: Optional[Event] = None,
) -> int:
    """
    Stage item thumbnails one at a time.

    Best-effort: a failing stager leaves the item without a local image.
    When stop_event is set, staging ends; the image in flight is dropped and
    the remaining items keep only their remote URL.

    Returns:
        Number of images staged so far (also kept on result.images_staged)
    """
    pending = [item for order in result.orders for item in order.items if item.image_url]
    if not pending:
        return result.images_staged

    reporter.emit(
        ProgressStage.DOWNLOADING_IMAGES,
        f"Staging {len(pending)} images",
        orders_found=len(result.orders),
        total_items=len(pending)
    )

    for position, item in enumerate(pending, start=1):
        _check_cancelled(cancel_event)
        if stop_event is not None and stop_event.is_set():
            break
        embedded = result.archive.image_for(item.image_url) if result.archive else None
        try:
            local_path = stage_image(item.image_url, item.product_title, embedded)
        except Exception as e:
            logger.warning("image_stage_failed", url=item.image_url, error=str(e))
            local_path = None

        if stop_event is not None and stop_event.is_set():
            break
        if local_path:
            item.local_image_path = local_path
            result.images_staged += 1

        reporter.emit(
            ProgressStage.DOWNLOADING_IMAGES,
            f"Staged image {position} of {len(pending)}",
            orders_found=len(result.orders),
            total_items=len(pending),
            processed_items=position,
            images_staged=result.images_staged
        )

    if stop_event is not None and stop_event.is_set():
        logger.warning(
            "image_staging_stopped",
            staged=result.images_staged,
            unstaged=len(pending) - result.images_staged
        )
    return result.images_staged
