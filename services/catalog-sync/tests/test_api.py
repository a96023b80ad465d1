"""Tests for the HTTP application."""

import asyncio

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from catalog_sync.api import build_services, create_app
from catalog_sync.models import ProductCreate
from catalog_sync.object_store import LocalObjectStore
from conftest import basic_auth, make_image

SYNC_HEADERS = {"X-API-Key": "sync-key"}
ADMIN_HEADERS = {"X-Admin-Key": "admin-key"}


def run(coro):
    return asyncio.run(coro)


def add_product(services, **overrides):
    fields = {"name": "Худи Test", "price": 350000, "category": "clothing", "subcategory": "Толстовки"}
    fields.update(overrides)
    product = run(services.store.create_product(ProductCreate(**fields)))
    services.store.clear_cache()
    return product


def checkout(client, session_id="s1"):
    return client.post("/api/orders", json={
        "sessionId": session_id,
        "customerName": "Иван",
        "customerEmail": "ivan@example.com",
        "customerPhone": "+79000000000",
        "address": "Тула",
    })


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_correlation_id_echoed(self, client):
        response = client.get("/health", headers={"X-Correlation-ID": "abc-123"})

        assert response.headers["X-Correlation-ID"] == "abc-123"


class TestProducts:
    """Tests for storefront catalog endpoints."""

    def test_list_products(self, client, services):
        """Test products list in camelCase with pagination and cache headers."""
        for i in range(3):
            add_product(services, name=f"Худи {i}")

        response = client.get("/api/products", params={"page": 1, "limit": 2})

        assert response.status_code == 200
        assert response.headers["Cache-Control"] == "public, max-age=60, s-maxage=300"
        body = response.json()
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "totalPages": 2}
        assert len(body["products"]) == 2
        assert {"imageUrl", "onSale", "isNew", "originalPrice"} <= set(body["products"][0])

    def test_filters(self, client, services):
        add_product(services)
        add_product(services, name="Носки", category="socks", subcategory="Детские", on_sale=True)

        assert [p["name"] for p in client.get("/api/products?category=socks").json()["products"]] == ["Носки"]
        assert len(client.get("/api/products?sale=true").json()["products"]) == 1

    def test_limit_bounds(self, client):
        response = client.get("/api/products?limit=500")

        assert response.status_code == 400
        assert response.json()["field"] == "limit"

    def test_get_product(self, client, services):
        product = add_product(services)

        assert client.get(f"/api/products/{product.id}").json()["name"] == "Худи Test"

        response = client.get("/api/products/1")
        assert response.status_code == 404
        assert response.json() == {"message": "Product not found"}

    def test_create_product(self, client):
        """Test products can be created and are visible immediately."""
        response = client.post("/api/products", json={"name": "Кружка", "sku": "M1", "price": 50000})

        assert response.status_code == 201
        assert response.json()["sku"] == "M1"
        assert client.get("/api/products").json()["pagination"]["total"] == 1

    def test_create_product_validation(self, client):
        """Test invalid bodies report the offending field."""
        response = client.post("/api/products", json={"name": "", "price": 10})

        assert response.status_code == 400
        assert response.json()["field"] == "name"
        assert "message" in response.json()

    def test_duplicate_sku(self, client):
        client.post("/api/products", json={"name": "Кружка", "sku": "M1"})

        response = client.post("/api/products", json={"name": "Другая", "sku": "M1"})

        assert response.status_code == 400
        assert response.json()["field"] == "sku"


class TestCartAndOrders:
    """Tests for cart and checkout endpoints."""

    def test_cart_flow(self, client, services):
        """Test add, replace, list and remove cart lines."""
        product = add_product(services)
        line = {"sessionId": "s1", "productId": product.id, "size": "M"}

        assert client.post("/api/cart", json={**line, "quantity": 1}).status_code == 200
        assert client.post("/api/cart", json={**line, "quantity": 2}).json()["quantity"] == 2

        cart = client.get("/api/cart/s1").json()
        assert len(cart) == 1
        assert cart[0]["quantity"] == 2
        assert cart[0]["product"]["name"] == "Худи Test"

        removed = client.delete(f"/api/cart/s1/items/{product.id}", params={"size": "M"})
        assert removed.json() == {"removed": True}
        assert client.get("/api/cart/s1").json() == []

    def test_add_unknown_product(self, client):
        response = client.post("/api/cart", json={"sessionId": "s1", "productId": 42})

        assert response.status_code == 400
        assert response.json()["field"] == "productId"

    def test_checkout(self, client, services):
        """Test checkout snapshots the cart and empties it."""
        product = add_product(services)
        client.post("/api/cart", json={"sessionId": "s1", "productId": product.id, "quantity": 2})

        response = checkout(client)

        assert response.status_code == 201
        order = response.json()
        assert order["total"] == 700000
        assert order["status"] == "pending"
        assert order["items"][0]["productId"] == product.id
        assert client.get("/api/cart/s1").json() == []

    def test_checkout_empty_cart(self, client):
        response = checkout(client, "nobody")

        assert response.status_code == 400
        assert response.json() == {"message": "Cart is empty", "field": "sessionId"}

    def test_clear_cart(self, client, services):
        product = add_product(services)
        client.post("/api/cart", json={"sessionId": "s1", "productId": product.id})

        assert client.delete("/api/cart/s1").json() == {"removed": 1}


class TestSyncApi:
    """Tests for the key-protected JSON sync API."""

    def test_requires_key(self, client):
        assert client.post("/api/sync/products", json=[]).status_code == 401
        response = client.post("/api/sync/products", json=[], headers={"X-API-Key": "wrong"})
        assert response.status_code == 401
        assert response.json() == {"message": "Unauthorized"}

    def test_disabled_without_key(self, settings, backend, object_store):
        settings.sync_api_key = None
        client = TestClient(create_app(services=build_services(settings, backend=backend, object_store=object_store)))

        assert client.get("/api/sync/orders", headers=SYNC_HEADERS).status_code == 403

    def test_sync_products_and_inventory(self, client):
        response = client.post(
            "/api/sync/products",
            json=[{"externalId": "E1", "sku": "H100", "name": "Худи", "price": 350000}],
            headers=SYNC_HEADERS,
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["results"][0]["status"] == "created"

        response = client.post(
            "/api/sync/inventory",
            json=[{"externalId": "E1", "price": 300000}, {"externalId": "E2"}],
            headers=SYNC_HEADERS,
        )
        assert [r["status"] for r in response.json()["results"]] == ["updated", "not_found"]
        assert client.get("/api/products").json()["products"][0]["price"] == 300000

    def test_orders_and_status(self, client, services):
        """Test order listing and forward-only status updates."""
        product = add_product(services)
        client.post("/api/cart", json={"sessionId": "s1", "productId": product.id})
        order_id = checkout(client).json()["id"]

        orders = client.get("/api/sync/orders", headers=SYNC_HEADERS).json()
        assert [o["id"] for o in orders] == [order_id]

        response = client.patch(f"/api/sync/orders/{order_id}", json={"status": "shipped"}, headers=SYNC_HEADERS)
        assert response.json()["status"] == "shipped"

        response = client.patch(f"/api/sync/orders/{order_id}", json={"status": "pending"}, headers=SYNC_HEADERS)
        assert response.status_code == 400
        assert response.json()["field"] == "status"

        response = client.patch("/api/sync/orders/1", json={"status": "shipped"}, headers=SYNC_HEADERS)
        assert response.status_code == 404


class TestAdminApi:
    """Tests for operator endpoints."""

    def test_requires_key(self, client):
        assert client.post("/api/admin/cache/clear").status_code == 401
        assert client.post("/api/admin/cache/clear", headers={"X-Admin-Key": "nope"}).status_code == 401

    def test_key_in_header_or_query(self, client):
        assert client.post("/api/admin/cache/clear", headers=ADMIN_HEADERS).json() == {"status": "cleared"}
        assert client.post("/api/admin/cache/clear?key=admin-key").status_code == 200

    def test_disabled_without_key(self, settings, backend, object_store):
        settings.admin_api_key = None
        client = TestClient(create_app(services=build_services(settings, backend=backend, object_store=object_store)))

        assert client.post("/api/admin/cache/clear", headers=ADMIN_HEADERS).status_code == 403

    def test_thumbnails(self, client, services):
        url = services.pipeline.ingest("a.jpg", make_image())
        add_product(services, image_url=url)

        response = client.post("/api/admin/images/thumbnails?limit=5", headers=ADMIN_HEADERS)

        assert response.json() == {"converted": 1, "failed": 0, "remaining": 0, "productsUpdated": 1}
        assert client.get("/api/products").json()["products"][0]["thumbnailUrl"].endswith("a_thumb.webp")

    def test_backfill(self, client, services):
        add_product(services, sku="GR1", name="Носки", category="")

        body = client.post("/api/admin/categories/backfill", headers=ADMIN_HEADERS).json()

        assert (body["total"], body["updated"]) == (1, 1)

    def test_resync_bad_source(self, client):
        response = client.post("/api/admin/resync?source=ftp", headers=ADMIN_HEADERS)

        assert response.status_code == 400
        assert response.json()["field"] == "source"

    def test_resync(self, client, object_store, import_xml):
        object_store.objects["exchange/import.xml"] = import_xml

        body = client.post("/api/admin/resync", headers=ADMIN_HEADERS).json()

        assert body["status"] == "completed"
        assert client.get("/api/products").json()["pagination"]["total"] == 2


class TestExchangeEndpoint:
    """Tests for the exchange protocol over HTTP."""

    def test_unauthorized(self, client):
        response = client.get("/api/1c-exchange?type=catalog&mode=checkauth")

        assert response.status_code == 401
        assert response.text == "failure\nUnauthorized"
        assert response.headers["WWW-Authenticate"] == 'Basic realm="1C Exchange"'

    def test_unauthorized_body_not_read(self, client, monkeypatch):
        """Test a rejected upload is answered without buffering its body."""
        reads = []

        async def body(self):
            reads.append(self.url.path)
            return b""

        monkeypatch.setattr(Request, "body", body)

        response = client.post(
            "/api/1c-exchange?type=catalog&mode=file&filename=import.xml",
            content=b"x" * 1024,
            headers={"Authorization": basic_auth(password="wrong")},
        )

        assert response.status_code == 401
        assert reads == []

    def test_session(self, client, import_xml, offers_xml):
        """Test a full catalog session through the HTTP route."""
        auth = {"Authorization": basic_auth()}

        response = client.get("/api/1c-exchange?type=catalog&mode=checkauth", headers=auth)
        assert response.text.startswith("success\nPHPSESSID\n")
        assert response.headers["content-type"].startswith("text/plain")

        for name, body in (("import.xml", import_xml), ("offers.xml", offers_xml)):
            response = client.post(
                f"/api/1c-exchange?type=catalog&mode=file&filename={name}",
                content=body,
                headers=auth,
            )
            assert response.text == "success"
            response = client.get(f"/api/1c-exchange?type=catalog&mode=import&filename={name}", headers=auth)
            assert response.text == "success"

        products = client.get("/api/products").json()["products"]
        assert sorted(p["price"] for p in products) == [45050, 350000]

    def test_sale_query(self, client):
        response = client.get("/api/1c-exchange?type=sale&mode=query", headers={"Authorization": basic_auth()})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "КоммерческаяИнформация" in response.text


class TestLocalMedia:
    """Tests for serving media without an object store."""

    @pytest.fixture
    def local_client(self, settings, backend):
        services = build_services(settings, backend=backend)
        return TestClient(create_app(services=services)), services

    def test_services_use_media_dir(self, local_client, settings):
        """Test images go to the media directory and staged feeds are not mirrored."""
        _, services = local_client

        assert isinstance(services.media_store, LocalObjectStore)
        assert str(services.media_store.root) == settings.media_dir
        assert services.staging.remote is None

    def test_uploaded_image_is_served(self, local_client):
        client, services = local_client
        auth = {"Authorization": basic_auth()}

        response = client.post(
            "/api/1c-exchange?type=catalog&mode=file&filename=photo.png",
            content=make_image("PNG"),
            headers=auth,
        )
        assert response.text == "success"

        media = client.get("/media/products/photo.webp")
        assert media.status_code == 200
        assert media.content[:4] == b"RIFF"
