"""
Unit tests for the AliExpress order export parser.

Run: pytest tests/unit/test_order_html_parser.py -v
"""

from datetime import datetime
from threading import Event

import pytest

from exceptions import DocumentFormatError, ImportCancelledError
from models.order_import import OrderStatus, ProgressStage, STAGE_ORDER
from parsers.order_html_parser import (
    normalize_image_url,
    normalize_status,
    parse_money,
    parse_order_document,
    read_order_document,
    stage_order_images,
)
from parsers.progress import ProgressReporter
from tests.factories import OrderHtmlFactory


def _collect():
    events = []
    return events, events.append


class TestParseOrderDocument:
    """Tests for parse_order_document()"""

    def test_two_orders_one_item_each(self):
        """Should report two orders and two items."""
        # Arrange
        html = OrderHtmlFactory.page(
            OrderHtmlFactory.order(items=[OrderHtmlFactory.item("NE555 Timer IC DIP-8")]),
            OrderHtmlFactory.order(items=[OrderHtmlFactory.item("10K Ohm Resistor 1/4W")]),
        )

        # Act
        result = parse_order_document(html)
        stats = result.statistics()

        # Assert
        assert stats.total_orders == 2
        assert stats.total_items == 2
        assert stats.skipped_blocks == 0

    def test_order_fields(self, sample_order_html):
        """Should read number, date, store, status and totals."""
        result = parse_order_document(sample_order_html.encode("utf-8"))

        first, second = result.orders
        assert first.order_number == "8100000000000001"
        assert first.order_date == datetime(2024, 3, 5)
        assert first.supplier == "Tech Parts Store"
        assert first.status == OrderStatus.DELIVERED
        assert first.total_amount == 11.0
        assert second.status == OrderStatus.SHIPPED
        assert first.raw_snapshot_ref.startswith("sha256:")

    def test_item_fields(self, sample_order_html):
        """Should read title, quantity, prices, image and product link."""
        result = parse_order_document(sample_order_html)

        item = result.orders[0].items[0]
        assert item.product_title == "10K Ohm Resistor 1/4W"
        assert item.quantity == 2
        assert item.unit_price == 1.5
        assert item.total_price == 3.0
        assert item.image_url.endswith("_800x800.jpg")
        assert item.product_url.startswith("https://www.aliexpress.com/item/")
        assert item.parsed_component.subcategory == "Resistors"

    def test_order_total_element_wins(self):
        """Should prefer the displayed order total over the item sum."""
        html = OrderHtmlFactory.page(OrderHtmlFactory.order(
            items=[OrderHtmlFactory.item("NE555 Timer IC", unit_price=1.0, quantity=2)],
            total=4.5,
        ))

        result = parse_order_document(html)

        assert result.orders[0].total_amount == 4.5

    def test_missing_store_uses_default_supplier(self):
        """Should fall back to AliExpress as supplier."""
        html = OrderHtmlFactory.page(OrderHtmlFactory.order(store=None))

        result = parse_order_document(html)

        assert result.orders[0].supplier == "AliExpress"
        assert result.orders[0].seller_name is None

    def test_broken_block_is_skipped(self):
        """Should skip a block without items and keep its siblings."""
        broken = (
            '<div class="order-item"><div class="order-item-header">'
            "Order ID: 8100000000000099</div></div>"
        )
        html = OrderHtmlFactory.page(broken, OrderHtmlFactory.order())

        result = parse_order_document(html)

        assert len(result.orders) == 1
        assert result.skipped_blocks == 1
        assert result.statistics().warnings[0].startswith("Skipped")

    def test_generated_order_number_is_stable(self):
        """Should derive the same order number from the same block."""
        block = (
            '<div class="order-item"><div class="order-item-store-name"><span>Shop</span></div>'
            + OrderHtmlFactory.item("LM7805 Voltage Regulator TO-220", product_id="1005000777")
            + "</div>"
        )
        html = OrderHtmlFactory.page(block)

        first = parse_order_document(html).orders[0].order_number
        second = parse_order_document(html).orders[0].order_number

        assert first.startswith("AE-")
        assert first == second

    def test_no_order_blocks(self):
        """Should return an empty result for a page without orders."""
        html = "<html><body><p>" + "Nothing to see here. " * 10 + "</p></body></html>"

        result = parse_order_document(html)

        assert result.has_data is False
        assert result.blocks_found == 0

    @pytest.mark.parametrize("content", [
        b"",
        "<p>short</p>",
        "plain text without markup " * 10,
        b"\x00\x01\x02binary" * 40,
    ])
    def test_invalid_document(self, content):
        """Should raise DocumentFormatError before emitting progress."""
        events, sink = _collect()

        with pytest.raises(DocumentFormatError):
            parse_order_document(content, progress=sink)
        assert events == []

    def test_mhtml_archive_with_embedded_image(self):
        """Should parse the archived page and stage its embedded image."""
        # Arrange
        image_url = "https://img.example.com/parts/ne555.jpg"
        html = OrderHtmlFactory.page(OrderHtmlFactory.order(
            items=[OrderHtmlFactory.item("NE555 Timer IC DIP-8", image_url=image_url)]
        ))
        archive = OrderHtmlFactory.mhtml(html, {image_url: b"\xff\xd8" + b"\x01" * 2048})
        staged = []

        def stage_image(url, title, embedded):
            staged.append((url, title, embedded))
            return "imported-images/ne555.jpg"

        # Act
        result = parse_order_document(archive, stage_image=stage_image)

        # Assert
        assert result.images_staged == 1
        assert staged[0][2] is not None
        assert result.orders[0].items[0].local_image_path == "imported-images/ne555.jpg"

    def test_failing_image_stager_is_tolerated(self, sample_order_html):
        """Should keep parsing when staging an image raises."""
        def stage_image(url, title, embedded):
            raise OSError("disk full")

        result = parse_order_document(sample_order_html, stage_image=stage_image)

        assert result.images_staged == 0
        assert result.total_items == 3

    def test_stop_event_leaves_remaining_images_unstaged(self, sample_order_html):
        """Should drop the image in flight and stage nothing more once stop is set."""
        # Arrange
        stop = Event()
        result = read_order_document(sample_order_html, ProgressReporter())

        def stage_image(url, title, embedded):
            stop.set()
            return "imported-images/first.jpg"

        # Act
        staged = stage_order_images(result, stage_image, ProgressReporter(), stop_event=stop)

        # Assert
        assert staged == 0
        items = [item for order in result.orders for item in order.items]
        assert all(item.local_image_path is None for item in items)
        assert all(item.image_url for item in items)

    def test_cancelled(self, sample_order_html):
        """Should stop with ImportCancelledError when cancelled."""
        cancel = Event()
        cancel.set()

        with pytest.raises(ImportCancelledError):
            parse_order_document(sample_order_html, cancel_event=cancel)


class TestParseProgress:
    """Tests for progress events emitted while parsing."""

    def test_events_are_ordered(self, sample_order_html):
        """Should emit numbered events whose stages never move backwards."""
        events, sink = _collect()

        parse_order_document(sample_order_html, progress=sink, stage_image=lambda *a: None)

        assert [e.sequence for e in events] == list(range(1, len(events) + 1))
        ranks = [STAGE_ORDER[e.stage] for e in events]
        assert ranks == sorted(ranks)
        assert events[0].stage == ProgressStage.PARSING
        assert events[-1].stage == ProgressStage.COMPLETE
        assert ProgressStage.DOWNLOADING_IMAGES in {e.stage for e in events}

    def test_sink_failure_does_not_change_result(self, sample_order_html):
        """Should produce the same orders when the sink raises."""
        def broken_sink(event):
            raise RuntimeError("client went away")

        quiet = parse_order_document(sample_order_html)
        noisy = parse_order_document(sample_order_html, progress=broken_sink)

        assert [o.model_dump() for o in noisy.orders] == [o.model_dump() for o in quiet.orders]

    def test_reporter_drops_stage_regression(self):
        """Should refuse an event that moves back a stage."""
        events, sink = _collect()
        reporter = ProgressReporter(sink)

        reporter.emit(ProgressStage.STRUCTURING)
        dropped = reporter.emit(ProgressStage.PARSING)

        assert dropped is None
        assert len(events) == 1
        assert reporter.sequence == 1


class TestFieldHelpers:
    """Tests for status, money and image URL helpers."""

    @pytest.mark.parametrize("raw, expected", [
        ("Completed", OrderStatus.DELIVERED),
        ("Awaiting delivery", OrderStatus.SHIPPED),
        ("Awaiting payment", OrderStatus.PENDING),
        ("Order closed", OrderStatus.CANCELLED),
        ("To ship", OrderStatus.ORDERED),
        ("Something new", OrderStatus.ORDERED),
        (None, OrderStatus.ORDERED),
    ])
    def test_normalize_status(self, raw, expected):
        """Should map marketplace wording onto OrderStatus."""
        assert normalize_status(raw) == expected

    @pytest.mark.parametrize("text, expected", [
        ("US $1,234.56", 1234.56),
        ("€12,50", 12.5),
        ("$ 3", 3.0),
        ("1.234,56 €", 1234.56),
        ("free", None),
        (None, None),
    ])
    def test_parse_money(self, text, expected):
        """Should parse displayed amounts in common formats."""
        assert parse_money(text) == expected

    def test_normalize_image_url(self):
        """Should upsize alicdn thumbnails and drop placeholders."""
        assert normalize_image_url("//ae01.alicdn.com/kf/abc_220x220.jpg") == \
            "https://ae01.alicdn.com/kf/abc_800x800.jpg"
        assert normalize_image_url("https://example.com/placeholder.png") is None
        assert normalize_image_url("data:image/png;base64,AAAA") is None
