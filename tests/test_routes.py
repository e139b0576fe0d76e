"""
Tests for API Routes.

Exercises every endpoint through the FastAPI test client with the
in-memory services, including the error envelope and status codes.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from licensecore.api.dependencies import Services
from licensecore.exceptions import LicenseMintError
from licensecore.services.catalog import DEMO_CREATOR
from tests.helpers import BUYER, OTHER_USER, SELLER

ASSET = "asset_test_photo"


def _create_escrow(client: TestClient, amount: str = "25.00") -> dict:
    response = client.post(
        "/payment",
        json={
            "type": "escrow",
            "buyer_id": BUYER,
            "amount": amount,
            "currency": "usd",
            "asset_id": ASSET,
            "seller_id": SELLER,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()["escrow"]


def _mint(client: TestClient, template_id: str = "extended") -> dict:
    response = client.post(
        "/licenses",
        json={
            "action": "mint",
            "asset_id": ASSET,
            "license_template_id": template_id,
            "purchaser": BUYER,
        },
    )
    assert response.status_code == 200, response.text
    return response.json()


# ============================================================================
# Escrow
# ============================================================================


class TestEscrowRoutes:
    """Tests for /escrow."""

    def test_fund_release_flow(self, client: TestClient):
        """Escrow opened via /payment can be funded and released via /escrow."""
        escrow = _create_escrow(client)
        assert escrow["status"] == "pending"
        assert escrow["currency"] == "USD"

        funded = client.post(
            "/escrow",
            json={"action": "fund", "escrow_id": escrow["escrow_id"], "amount": "25.00"},
        )
        assert funded.status_code == 200
        assert funded.json()["message"] == "Escrow funded successfully"
        assert funded.json()["escrow"]["status"] == "funded"

        released = client.post(
            "/escrow", json={"action": "release", "escrow_id": escrow["escrow_id"]}
        )
        assert released.status_code == 200
        assert released.json()["message"] == "Escrow released successfully"

        fetched = client.get("/escrow", params={"escrow_id": escrow["escrow_id"]})
        assert fetched.json()["escrow"]["status"] == "released"

    def test_refund(self, client: TestClient):
        """Funded escrow can be refunded."""
        escrow = _create_escrow(client)
        client.post(
            "/escrow", json={"action": "fund", "escrow_id": escrow["escrow_id"], "amount": "25"}
        )

        response = client.post(
            "/escrow",
            json={"action": "refund", "escrow_id": escrow["escrow_id"], "reason": "cancelled"},
        )

        assert response.status_code == 200
        assert response.json()["message"] == "Escrow refunded successfully"
        assert response.json()["escrow"]["close_reason"] == "cancelled"

    def test_fund_wrong_amount(self, client: TestClient):
        """Amount mismatch is a 400 with the error envelope."""
        escrow = _create_escrow(client)

        response = client.post(
            "/escrow",
            json={"action": "fund", "escrow_id": escrow["escrow_id"], "amount": "10.00"},
        )

        assert response.status_code == 400
        assert "Amount must match escrow amount" in response.json()["error"]

    def test_release_unfunded(self, client: TestClient):
        """Wrong-state transition is a 400."""
        escrow = _create_escrow(client)

        response = client.post(
            "/escrow", json={"action": "release", "escrow_id": escrow["escrow_id"]}
        )

        assert response.status_code == 400
        assert "Cannot release" in response.json()["error"]

    def test_unknown_escrow(self, client: TestClient):
        """Unknown escrow is a 404."""
        response = client.get("/escrow", params={"escrow_id": "escrow_missing"})

        assert response.status_code == 404
        assert response.json() == {"error": "Escrow not found: escrow_missing"}

    def test_invalid_action(self, client: TestClient):
        """Unknown action is a 400."""
        response = client.post("/escrow", json={"action": "cancel", "escrow_id": "x"})

        assert response.status_code == 400
        assert "error" in response.json()

    def test_missing_escrow_id(self, client: TestClient):
        """Missing query parameter is a 400."""
        response = client.get("/escrow")
        assert response.status_code == 400


# ============================================================================
# Payments
# ============================================================================


class TestPaymentRoutes:
    """Tests for /payment."""

    def test_direct_payment(self, client: TestClient):
        """type=payment settles to the seller and records the asset title."""
        response = client.post(
            "/payment",
            json={
                "type": "payment",
                "buyer_id": BUYER,
                "amount": "25.00",
                "currency": "USD",
                "asset_id": ASSET,
                "seller_id": SELLER,
                "license_id": "standard",
            },
        )

        assert response.status_code == 200
        payment = response.json()["payment"]
        assert payment["status"] == "completed"
        assert payment["recipients"] == [SELLER]
        assert payment["metadata"]["asset_title"] == "Test Photo"
        assert payment["metadata"]["template_id"] == "standard"

    def test_payment_seller_mismatch(self, client: TestClient):
        """Seller that does not own the asset is a 400."""
        response = client.post(
            "/payment",
            json={
                "type": "payment",
                "buyer_id": BUYER,
                "amount": "25.00",
                "currency": "USD",
                "asset_id": ASSET,
                "seller_id": OTHER_USER,
            },
        )

        assert response.status_code == 400
        assert "Invalid seller ID" in response.json()["error"]

    def test_payment_unknown_asset(self, client: TestClient):
        """Unknown asset is a 404."""
        response = client.post(
            "/payment",
            json={
                "type": "payment",
                "buyer_id": BUYER,
                "amount": "25.00",
                "currency": "USD",
                "asset_id": "asset_missing",
                "seller_id": SELLER,
            },
        )

        assert response.status_code == 404

    def test_payment_non_positive_amount(self, client: TestClient):
        """Zero amount fails validation with 400."""
        response = client.post(
            "/payment",
            json={
                "type": "payment",
                "buyer_id": BUYER,
                "amount": "0",
                "currency": "USD",
                "asset_id": ASSET,
                "seller_id": SELLER,
            },
        )

        assert response.status_code == 400

    def test_split_payment(self, client: TestClient):
        """type=split returns each computed share."""
        response = client.post(
            "/payment",
            json={
                "type": "split",
                "buyer_id": BUYER,
                "amount": "100.00",
                "currency": "USD",
                "split_recipients": [
                    {"address": SELLER, "percentage": "70"},
                    {"address": OTHER_USER, "percentage": "30"},
                ],
            },
        )

        assert response.status_code == 200
        shares = response.json()["payment"]["shares"]
        assert [(s["address"], s["amount"]) for s in shares] == [
            (SELLER, "70.00"),
            (OTHER_USER, "30.00"),
        ]

    def test_split_unbalanced(self, client: TestClient):
        """Percentages not summing to 100 is a 400."""
        response = client.post(
            "/payment",
            json={
                "type": "split",
                "buyer_id": BUYER,
                "amount": "100.00",
                "currency": "USD",
                "split_recipients": [{"address": SELLER, "percentage": "60"}],
            },
        )

        assert response.status_code == 400
        assert "Invalid split" in response.json()["error"]

    def test_verify_and_history(self, client: TestClient):
        """A settled payment verifies and appears in history."""
        paid = client.post(
            "/payment",
            json={
                "type": "payment",
                "buyer_id": BUYER,
                "amount": "25.00",
                "currency": "USD",
                "asset_id": ASSET,
                "seller_id": SELLER,
            },
        ).json()["payment"]

        verified = client.post(
            "/payment",
            json={"type": "verify", "buyer_id": BUYER, "transaction_hash": paid["transaction_hash"]},
        )
        history = client.get(
            "/payment", params={"type": "history", "address": BUYER, "direction": "sent"}
        )

        assert verified.status_code == 200
        assert verified.json()["verification"]["is_valid"] is True
        assert verified.json()["verification"]["confirmations"] >= 1
        assert history.status_code == 200
        assert [tx["transaction_hash"] for tx in history.json()["transactions"]] == [
            paid["transaction_hash"]
        ]

    def test_verify_unknown(self, client: TestClient):
        """Unknown transaction is a 404."""
        response = client.post(
            "/payment", json={"type": "verify", "buyer_id": BUYER, "transaction_hash": "0xabc"}
        )
        assert response.status_code == 404

    def test_estimate(self, client: TestClient):
        """type=estimate returns gas figures."""
        response = client.get(
            "/payment", params={"type": "estimate", "amount": "25.00", "currency": "USD"}
        )

        assert response.status_code == 200
        estimate = response.json()["estimate"]
        assert estimate["gas_price"] == 50
        assert estimate["gas_limit"] > 21000
        assert estimate["currency"] == "FIL"

    def test_escrow_query(self, client: TestClient):
        """type=escrow looks up an escrow."""
        escrow = _create_escrow(client)

        response = client.get(
            "/payment", params={"type": "escrow", "escrow_id": escrow["escrow_id"]}
        )

        assert response.status_code == 200
        assert response.json()["escrow"]["escrow_id"] == escrow["escrow_id"]

    def test_unknown_query_type(self, client: TestClient):
        """Unknown ?type= is a 400."""
        response = client.get("/payment", params={"type": "balance"})
        assert response.status_code == 400
        assert "error" in response.json()


# ============================================================================
# Licenses
# ============================================================================


class TestLicenseRoutes:
    """Tests for /licenses."""

    def test_templates(self, client: TestClient):
        """Templates are listed cheapest first with explicit unbounded markers."""
        response = client.get("/licenses", params={"type": "templates"})

        assert response.status_code == 200
        templates = response.json()["templates"]
        assert [t["template_id"] for t in templates] == ["standard", "extended", "exclusive"]
        assert templates[0]["duration_days"] == "perpetual"
        assert templates[2]["max_uses"] == "unlimited"

    def test_mint_returns_price(self, client: TestClient):
        """Mint reports the price at the template multiplier."""
        minted = _mint(client, "extended")

        assert minted["license"]["owner"] == BUYER
        assert minted["license"]["max_uses"] == 5
        assert minted["price"] == "50.00"
        assert minted["currency"] == "USD"

    def test_mint_unknown_asset(self, client: TestClient):
        """Minting for an unknown asset is a 404."""
        response = client.post(
            "/licenses",
            json={
                "action": "mint",
                "asset_id": "asset_missing",
                "license_template_id": "standard",
                "purchaser": BUYER,
            },
        )
        assert response.status_code == 404

    def test_mint_unknown_template(self, client: TestClient):
        """Minting with an unknown template is a 404."""
        response = client.post(
            "/licenses",
            json={
                "action": "mint",
                "asset_id": ASSET,
                "license_template_id": "premium",
                "purchaser": BUYER,
            },
        )
        assert response.status_code == 404

    def test_use_verify_metadata(self, client: TestClient):
        """Use consumes, verify and metadata reflect the token."""
        token_id = _mint(client)["license"]["token_id"]

        used = client.post("/licenses", json={"action": "use", "token_id": token_id, "user": BUYER})
        verified = client.get(
            "/licenses", params={"type": "verify", "token_id": token_id, "owner": BUYER}
        )
        metadata = client.get("/licenses", params={"type": "metadata", "token_id": token_id})

        assert used.status_code == 200
        assert used.json() == {
            "success": True,
            "message": "License used successfully",
            "token_id": token_id,
            "remaining_uses": 4,
        }
        assert verified.json()["verification"]["is_valid"] is True
        assert verified.json()["verification"]["remaining_uses"] == 4
        assert metadata.status_code == 200
        assert metadata.json()["metadata"]["name"].startswith("Digital License #")

    def test_use_rejected_is_not_an_error(self, client: TestClient):
        """A rejected use answers 200 with success=false."""
        token_id = _mint(client)["license"]["token_id"]

        response = client.post(
            "/licenses", json={"action": "use", "token_id": token_id, "user": OTHER_USER}
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "Invalid license"

    def test_transfer_and_listings(self, client: TestClient):
        """Transfer moves the token between owner listings."""
        token_id = _mint(client)["license"]["token_id"]

        response = client.post(
            "/licenses",
            json={"action": "transfer", "token_id": token_id, "from": BUYER, "to": OTHER_USER},
        )
        buyer_licenses = client.get("/licenses", params={"type": "user", "user": BUYER})
        other_licenses = client.get("/licenses", params={"type": "user", "user": OTHER_USER})
        asset_licenses = client.get("/licenses", params={"type": "asset", "asset_id": ASSET})

        assert response.status_code == 200
        assert response.json()["message"] == "License transferred successfully"
        assert buyer_licenses.json()["licenses"] == []
        assert [t["token_id"] for t in other_licenses.json()["licenses"]] == [token_id]
        assert len(asset_licenses.json()["licenses"]) == 1

    def test_transfer_not_transferable(self, client: TestClient):
        """Transferring a standard license is a 400."""
        token_id = _mint(client, "standard")["license"]["token_id"]

        response = client.post(
            "/licenses",
            json={"action": "transfer", "token_id": token_id, "from": BUYER, "to": OTHER_USER},
        )

        assert response.status_code == 400
        assert "not transferable" in response.json()["error"]

    def test_burn(self, client: TestClient):
        """Burn removes the token; burning again is a 404."""
        token_id = _mint(client)["license"]["token_id"]

        burned = client.post("/licenses", json={"action": "burn", "token_id": token_id, "user": BUYER})
        again = client.post("/licenses", json={"action": "burn", "token_id": token_id, "user": BUYER})

        assert burned.status_code == 200
        assert burned.json()["message"] == "License burned successfully"
        assert again.status_code == 404

    def test_burn_not_owner(self, client: TestClient):
        """Burning someone else's token is a 400."""
        token_id = _mint(client)["license"]["token_id"]

        response = client.post(
            "/licenses", json={"action": "burn", "token_id": token_id, "user": OTHER_USER}
        )

        assert response.status_code == 400

    def test_user_query_requires_user(self, client: TestClient):
        """Missing id for the query type is a 400."""
        response = client.get("/licenses", params={"type": "user"})
        assert response.status_code == 400


# ============================================================================
# Purchases
# ============================================================================


class TestPurchaseRoutes:
    """Tests for /purchase."""

    def test_purchase_and_lookup(self, client: TestClient):
        """A purchase returns the whole receipt and can be fetched again."""
        response = client.post(
            "/purchase",
            json={
                "buyer_id": BUYER,
                "asset_id": ASSET,
                "seller_id": SELLER,
                "license_template_id": "standard",
                "idempotency_key": "web-1",
            },
        )

        assert response.status_code == 200, response.text
        body = response.json()
        assert body["purchase"]["status"] == "completed"
        assert body["purchase"]["amount"] == "25.00"
        assert body["escrow"]["status"] == "released"
        assert body["license"]["owner"] == BUYER
        assert body["license"]["expires_at"] == "perpetual"

        fetched = client.get(f"/purchase/{body['purchase']['purchase_id']}")
        assert fetched.status_code == 200
        assert fetched.json()["purchase"]["token_id"] == body["license"]["token_id"]

    def test_purchase_demo_asset(self, client: TestClient):
        """Seeded demo assets can be bought from their creator."""
        response = client.post(
            "/purchase",
            json={
                "buyer_id": BUYER,
                "asset_id": "asset_landscape_photo",
                "seller_id": DEMO_CREATOR,
                "license_template_id": "exclusive",
            },
        )

        assert response.status_code == 200, response.text
        assert response.json()["purchase"]["amount"] == "125.00"

    def test_purchase_seller_mismatch(self, client: TestClient):
        """Wrong seller is a 400."""
        response = client.post(
            "/purchase",
            json={
                "buyer_id": BUYER,
                "asset_id": ASSET,
                "seller_id": OTHER_USER,
                "license_template_id": "standard",
            },
        )
        assert response.status_code == 400

    def test_purchase_failure_is_500_with_receipt(self, client: TestClient, services: Services):
        """A failure after funding is a 500; the failed receipt is stored."""
        with patch.object(
            services.licenses, "mint", AsyncMock(side_effect=LicenseMintError("registry down"))
        ):
            response = client.post(
                "/purchase",
                json={
                    "buyer_id": BUYER,
                    "asset_id": ASSET,
                    "seller_id": SELLER,
                    "license_template_id": "standard",
                },
            )

        assert response.status_code == 500
        assert "escrow refunded" in response.json()["error"]

    def test_unknown_purchase(self, client: TestClient):
        """Unknown purchase is a 404."""
        response = client.get("/purchase/purchase_missing")
        assert response.status_code == 404


# ============================================================================
# Misc
# ============================================================================


class TestMiscRoutes:
    """Tests for health, root and metrics."""

    def test_health(self, client: TestClient):
        """Health reports the backend."""
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["backend"] == "memory"

    def test_root(self, client: TestClient):
        """Root reports the service."""
        response = client.get("/")
        assert response.json()["status"] == "running"

    def test_metrics(self, client: TestClient):
        """Prometheus exposition includes the licensing metrics."""
        client.get("/health")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "licensing_http_requests_total" in response.text
