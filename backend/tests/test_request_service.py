"""
Purchase request service tests.

Verifies:
- URL and itemized creation, validation and automatable classification
- Optional metadata enrichment never blocks creation
- Requester edits (pending and resubmit) and item replacement
- Visibility, listings, approved-order filters, dashboard and archiving
"""

import re
from decimal import Decimal

import pytest

from app.models.requests import (
    KIND_ITEMIZED,
    KIND_URL,
    STATUS_APPROVED,
    STATUS_INFO_REQUESTED,
    STATUS_PENDING,
)
from app.services import approval_service, request_service
from app.services.metadata_service import ProductMetadata
from app.validation import ForbiddenError, InvalidStateError, NotFoundError, ValidationError


AMAZON_URL = "https://www.amazon.com.mx/dp/B08N5WRWNW"
OTHER_URL = "https://www.example-store.com/products/chair-42"


def _url_payload(**extra):
    payload = {"url": OTHER_URL, "justification": "Replacement chair"}
    payload.update(extra)
    return payload


def _itemized_payload(**extra):
    payload = {
        "justification": "Onboarding kit",
        "items": [
            {"name": "Keyboard", "quantity": 2, "unit_price": "10.50", "supplier": "Office Depot"},
            {"name": "Mouse", "quantity": 1, "unit_price": 5},
        ],
    }
    payload.update(extra)
    return payload


# =============================================================================
# URL REQUESTS
# =============================================================================


class TestCreateUrlRequest:
    def test_defaults(self, employee):
        req = request_service.create_url_request(employee, _url_payload())

        assert req.kind == KIND_URL
        assert req.status == STATUS_PENDING
        assert req.quantity == 1
        assert req.urgency == "normal"
        assert req.currency == "MXN"
        assert req.requester_id == employee.id
        assert req.is_automatable is False
        assert req.amazon_asin is None

    def test_amazon_url_is_automatable(self, employee):
        req = request_service.create_url_request(
            employee, _url_payload(url=AMAZON_URL, quantity="3", urgency="URGENT")
        )

        assert req.is_automatable is True
        assert req.amazon_asin == "B08N5WRWNW"
        assert req.quantity == 3
        assert req.urgency == "urgent"

    @pytest.mark.parametrize(
        "payload, message",
        [
            ({"justification": "x"}, "Missing required fields: url"),
            ({"url": OTHER_URL}, "Missing required fields: justification"),
            (_url_payload(url="ftp://files.example.com/a"), "url must be an http(s) URL"),
            (_url_payload(justification="   "), "justification cannot be blank"),
            (_url_payload(quantity=0), "quantity must be >= 1"),
            (_url_payload(quantity=1.5), "quantity must be an integer"),
            (_url_payload(urgency="asap"), "urgency must be one of"),
            (_url_payload(estimated_price="-1"), "estimated_price must be >= 0"),
            (_url_payload(status="approved"), "Field not allowed: status"),
        ],
    )
    def test_validation(self, employee, payload, message):
        with pytest.raises(ValidationError, match=re.escape(message)):
            request_service.create_url_request(employee, payload)

    def test_enrichment_fills_blank_fields(self, employee):
        def extractor(url):
            assert url == OTHER_URL
            return ProductMetadata(
                title="Ergonomic Chair",
                description="Mesh back",
                image_url="https://cdn.example-store.com/chair.jpg",
                price=Decimal("1299.50"),
                currency="MXN",
            )

        req = request_service.create_url_request(
            employee,
            _url_payload(product_title="My chair"),
            fetch_metadata=True,
            extractor=extractor,
        )

        assert req.product_title == "My chair"
        assert req.product_description == "Mesh back"
        assert req.product_image_url == "https://cdn.example-store.com/chair.jpg"
        assert req.estimated_price == Decimal("1299.50")

    def test_enrichment_failure_is_ignored(self, employee):
        req = request_service.create_url_request(
            employee,
            _url_payload(),
            fetch_metadata=True,
            extractor=lambda url: ProductMetadata(error="unexpected status code: 503"),
        )

        assert req.status == STATUS_PENDING
        assert req.product_title is None
        assert req.estimated_price is None


# =============================================================================
# ITEMIZED REQUESTS
# =============================================================================


class TestCreateItemizedRequest:
    def test_totals(self, employee):
        req = request_service.create_itemized_request(employee, _itemized_payload())

        assert req.kind == KIND_ITEMIZED
        assert req.total_amount == Decimal("26.00")
        assert req.quantity == 3
        assert [item.total_price for item in req.items] == [Decimal("21.00"), Decimal("5.00")]
        assert req.is_automatable is False
        data = req.to_dict()
        assert data["total_amount"] == "26.00"
        assert [item["name"] for item in data["items"]] == ["Keyboard", "Mouse"]

    def test_amazon_item_makes_request_automatable(self, employee):
        payload = _itemized_payload()
        payload["items"].append({"name": "Hub", "quantity": 1, "unit_price": "499", "product_url": AMAZON_URL})

        req = request_service.create_itemized_request(employee, payload)

        hub = req.items[-1]
        assert hub.source == "amazon"
        assert hub.amazon_asin == "B08N5WRWNW"
        assert req.is_automatable is True

    @pytest.mark.parametrize(
        "items, message",
        [
            ([], "items must be a non-empty list"),
            ("Keyboard", "items must be a non-empty list"),
            ([{"quantity": 1, "unit_price": 1}], r"items\[0\].name is required"),
            ([{"name": "A", "quantity": 0, "unit_price": 1}], r"items\[0\].quantity must be >= 1"),
            ([{"name": "A", "quantity": 1}], r"items\[0\].unit_price is required"),
            ([{"name": "A", "unit_price": 1, "source": "ebay"}], "source must be internal or amazon"),
            ([{"name": "A", "unit_price": 1, "amazon_asin": "short"}], "amazon_asin must be 10"),
            ([{"name": "A", "unit_price": 1, "colour": "red"}], "field not allowed: colour"),
        ],
    )
    def test_item_validation(self, employee, items, message):
        with pytest.raises(ValidationError, match=message):
            request_service.create_itemized_request(employee, _itemized_payload(items=items))

    def test_too_many_items(self, employee):
        items = [{"name": f"Item {i}", "unit_price": 1} for i in range(request_service.MAX_ITEMS + 1)]
        with pytest.raises(ValidationError, match="cannot exceed"):
            request_service.create_itemized_request(employee, _itemized_payload(items=items))


# =============================================================================
# EDITS
# =============================================================================


class TestUpdateRequest:
    def test_pending_edit_writes_no_history(self, employee):
        req = request_service.create_url_request(employee, _url_payload())

        updated = request_service.update_request(req.id, employee, {"url": AMAZON_URL, "quantity": 4})

        assert updated.status == STATUS_PENDING
        assert updated.url == AMAZON_URL
        assert updated.quantity == 4
        assert updated.is_automatable is True
        assert updated.amazon_asin == "B08N5WRWNW"
        assert [h.action for h in approval_service.get_history(req.id)] == ["created"]

    def test_replace_items(self, employee):
        req = request_service.create_itemized_request(employee, _itemized_payload())

        updated = request_service.update_request(req.id, employee, {
            "items": [{"name": "Monitor", "quantity": 2, "unit_price": "3000.00"}],
        })

        assert [item.name for item in updated.items] == ["Monitor"]
        assert updated.total_amount == Decimal("6000.00")
        assert updated.quantity == 2

    def test_items_rejected_on_url_request(self, employee):
        req = request_service.create_url_request(employee, _url_payload())
        with pytest.raises(ValidationError, match="items can only be set"):
            request_service.update_request(req.id, employee, {"items": [{"name": "A", "unit_price": 1}]})

    def test_resubmit_with_item_change(self, employee, gm):
        req = request_service.create_itemized_request(employee, _itemized_payload())
        approval_service.request_info(req.id, gm, "Which keyboard layout?")

        updated = request_service.update_request(req.id, employee, {
            "items": [{"name": "Keyboard ES layout", "quantity": 2, "unit_price": "11.00"}],
        })

        assert updated.status == STATUS_PENDING
        assert updated.total_amount == Decimal("22.00")
        assert [h.action for h in approval_service.get_history(req.id)][-1] == "resubmitted"

    def test_failed_resubmit_changes_nothing(self, employee, gm):
        req = request_service.create_url_request(employee, _url_payload())
        approval_service.request_info(req.id, gm, "Which model?")

        with pytest.raises(ValidationError):
            request_service.update_request(req.id, employee, {"quantity": -1})

        assert approval_service.load_request(req.id).status == STATUS_INFO_REQUESTED

    def test_cannot_edit_decided_request(self, employee, gm):
        req = request_service.create_url_request(employee, _url_payload())
        approval_service.approve(req.id, gm)
        with pytest.raises(InvalidStateError):
            request_service.update_request(req.id, employee, {"quantity": 2})


# =============================================================================
# READS
# =============================================================================


class TestVisibility:
    def test_owner_and_privileged_roles(self, employee, other_employee, gm, scm, admin):
        req = request_service.create_url_request(employee, _url_payload())

        assert request_service.get_request(req.id, employee).id == req.id
        for viewer in (gm, scm, admin):
            assert request_service.get_request(req.id, viewer).id == req.id
        with pytest.raises(ForbiddenError):
            request_service.get_request(req.id, other_employee)

    def test_missing(self, employee):
        with pytest.raises(NotFoundError):
            request_service.get_request(999, employee)


class TestListings:
    def test_list_requests_filters(self, employee, other_employee, gm):
        mine = request_service.create_url_request(employee, _url_payload())
        theirs = request_service.create_url_request(other_employee, _url_payload())
        approval_service.approve(theirs.id, gm)

        everything = request_service.list_requests()
        assert everything["total"] == 2
        assert [r["id"] for r in everything["items"]] == [theirs.id, mine.id]

        assert [r["id"] for r in request_service.list_requests(requester_id=employee.id)["items"]] == [mine.id]
        assert [r["id"] for r in request_service.list_requests(status=STATUS_APPROVED)["items"]] == [theirs.id]

    def test_list_requests_rejects_unknown_status(self, db_session):
        with pytest.raises(ValidationError):
            request_service.list_requests(status="shipped")

    def test_pagination_is_clamped(self, employee):
        for _ in range(3):
            request_service.create_url_request(employee, _url_payload())

        result = request_service.list_requests(page=2, per_page=2)
        assert result["total"] == 3
        assert len(result["items"]) == 1

        assert request_service.list_requests(per_page=1000)["per_page"] == request_service.MAX_PER_PAGE

    def test_approved_order_filters(self, employee, gm, admin, automation_account, fake_site):
        in_cart = request_service.create_url_request(employee, _url_payload(url=AMAZON_URL))
        manual = request_service.create_url_request(employee, _url_payload())
        bought = request_service.create_url_request(employee, _url_payload())
        request_service.create_url_request(employee, _url_payload())
        for req in (in_cart, manual, bought):
            approval_service.approve(req.id, gm)
        approval_service.mark_purchased(bought.id, admin)

        def ids(filter_name):
            return {r["id"] for r in request_service.list_approved_orders(filter_name)["items"]}

        assert ids("amazon_cart") == {in_cart.id}
        assert ids("pending_manual") == {manual.id}
        assert ids("purchased") == {bought.id}
        assert ids("all") == {in_cart.id, manual.id, bought.id}

        with pytest.raises(ValidationError):
            request_service.list_approved_orders("shipped")

    def test_failed_cart_push_is_pending_manual(self, employee, gm, fake_site):
        req = request_service.create_url_request(employee, _url_payload(url=AMAZON_URL))
        approval_service.approve(req.id, gm)

        orders = request_service.list_approved_orders("pending_manual")

        assert [r["id"] for r in orders["items"]] == [req.id]
        assert orders["items"][0]["cart_error"]

    def test_dashboard_stats(self, employee, gm, admin, automation_account, fake_site):
        in_cart = request_service.create_url_request(employee, _url_payload(url=AMAZON_URL))
        manual = request_service.create_url_request(employee, _url_payload())
        request_service.create_url_request(employee, _url_payload())
        approval_service.approve(in_cart.id, gm)
        approval_service.approve(manual.id, gm)

        stats = request_service.dashboard_stats()

        assert stats["total_users"] == 3
        assert stats["active_users"] == 3
        assert stats["total_requests"] == 3
        assert stats["pending_approvals"] == 1
        assert stats["approved_requests"] == 2
        assert stats["purchased_orders"] == 0
        assert stats["amazon_in_cart"] == 1
        assert stats["pending_manual"] == 1
        assert stats["cart_errors"] == 0


# =============================================================================
# ARCHIVING
# =============================================================================


class TestArchive:
    def test_admin_archives_terminal_request(self, employee, gm, admin):
        req = request_service.create_url_request(employee, _url_payload())
        approval_service.reject(req.id, gm, "Duplicate")

        archived = request_service.archive_request(req.id, admin)

        assert archived.deleted_at is not None
        with pytest.raises(NotFoundError):
            request_service.get_request(req.id, admin)
        assert request_service.list_requests()["total"] == 0
        with pytest.raises(InvalidStateError, match="already archived"):
            request_service.archive_request(req.id, admin)

    def test_only_terminal_requests(self, employee, admin):
        req = request_service.create_url_request(employee, _url_payload())
        with pytest.raises(InvalidStateError):
            request_service.archive_request(req.id, admin)

    def test_only_admins(self, employee, gm):
        req = request_service.create_url_request(employee, _url_payload())
        approval_service.reject(req.id, gm, "Duplicate")
        with pytest.raises(ForbiddenError):
            request_service.archive_request(req.id, gm)
