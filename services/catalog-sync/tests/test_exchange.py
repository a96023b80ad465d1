"""Tests for the CommerceML exchange protocol handler."""

import asyncio
import xml.etree.ElementTree as ET

import pytest
from catalog_sync.api import build_services
from catalog_sync.backend import InMemoryBackend
from catalog_sync.exceptions import AuthenticationError
from catalog_sync.exchange import ExchangeRequest, parse_basic_auth
from catalog_sync.models import CartItemCreate, OrderCreate, ProductCreate
from conftest import basic_auth, make_image


class SpyBackend(InMemoryBackend):
    """InMemoryBackend that counts writes."""

    def __init__(self):
        super().__init__()
        self.writes = 0

    async def put(self, table, row):
        self.writes += 1
        await super().put(table, row)

    async def update(self, table, key, values):
        self.writes += 1
        return await super().update(table, key, values)

    async def delete(self, table, key):
        self.writes += 1
        return await super().delete(table, key)


def run(coro):
    return asyncio.run(coro)


def call(services, mode, method="GET", type="catalog", filename=None, body=b"", authorization=None):
    if authorization is None:
        authorization = basic_auth()
    request = ExchangeRequest(
        method=method,
        type=type,
        mode=mode,
        filename=filename,
        body=body,
        authorization=authorization,
    )
    return run(services.exchange.handle(request))


@pytest.fixture
def spy_backend():
    return SpyBackend()


@pytest.fixture
def spy_services(settings, spy_backend, object_store):
    return build_services(settings, backend=spy_backend, object_store=object_store)


class TestBasicAuth:
    """Tests for credential parsing and checking."""

    def test_parse_basic_auth(self):
        assert parse_basic_auth(basic_auth("admin", "p:w")) == ("admin", "p:w")
        assert parse_basic_auth("Bearer abc") is None
        assert parse_basic_auth("Basic !!!") is None
        assert parse_basic_auth(None) is None

    def test_authenticate(self, services):
        services.exchange.authenticate(basic_auth())

        with pytest.raises(AuthenticationError):
            services.exchange.authenticate(basic_auth(password="wrong"))
        with pytest.raises(AuthenticationError):
            services.exchange.authenticate(basic_auth(username="root"))

    def test_unconfigured_credentials_reject_everything(self, settings, backend, object_store):
        settings.exchange_password = None
        services = build_services(settings, backend=backend, object_store=object_store)

        response = call(services, "checkauth")
        assert response.status == 401


class TestUnauthenticated:
    """Tests for rejected requests."""

    @pytest.mark.parametrize(
        "mode,method,filename",
        [
            ("checkauth", "GET", None),
            ("init", "GET", None),
            ("file", "POST", "import.xml"),
            ("import", "POST", "import.xml"),
        ],
    )
    def test_no_side_effects(self, spy_services, spy_backend, object_store, import_xml, mode, method, filename):
        """Test rejected requests write nothing anywhere."""
        response = call(
            spy_services,
            mode,
            method=method,
            filename=filename,
            body=import_xml,
            authorization=basic_auth(password="wrong"),
        )

        assert response.status == 401
        assert response.body == "failure\nUnauthorized"
        assert response.headers["WWW-Authenticate"] == 'Basic realm="1C Exchange"'
        assert spy_backend.writes == 0
        assert object_store.uploads == []
        assert spy_services.staging.list_local() == []

    def test_missing_header(self, services):
        response = call(services, "checkauth", authorization="")

        assert response.status == 401


class TestCatalogSession:
    """Tests for the catalog exchange session."""

    def test_checkauth(self, services):
        response = call(services, "checkauth")

        assert response.status == 200
        assert response.body == "success\nPHPSESSID\ncatalog-sync-session"

    def test_init(self, services):
        response = call(services, "init")

        assert response.body == f"zip=no\nfile_limit={services.settings.file_limit}"

    def test_full_session(self, services, object_store, import_xml, offers_xml):
        """Test checkauth, init, file uploads and imports end to end."""
        assert call(services, "checkauth").body.startswith("success")
        assert call(services, "init").body.startswith("zip=no")

        image = call(services, "file", "POST", filename="import_files/e1/hoodie.jpg", body=make_image())
        assert image.body == "success"
        assert "products/import_files_e1_hoodie.webp" in object_store.objects

        for name, body in (("import.xml", import_xml), ("offers.xml", offers_xml)):
            assert call(services, "file", "POST", filename=name, body=body).body == "success"
        assert services.staging.list_local() == ["import.xml", "offers.xml"]
        assert object_store.objects["exchange/import.xml"] == import_xml

        assert call(services, "import", filename="import.xml").body == "success"
        assert call(services, "import", filename="offers.xml").body == "success"

        hoodie = run(services.store.get_product_by_external_id("E1"))
        assert hoodie.price == 350000
        assert hoodie.image_url == object_store.public_url("products/import_files_e1_hoodie.webp")

    def test_import_from_post_body(self, services, import_xml):
        """Test an import may carry the document in its body."""
        response = call(services, "import", "POST", filename="import.xml", body=import_xml)

        assert response.body == "success"
        assert len(run(services.store.get_products())) == 2

    def test_import_missing_file(self, services):
        response = call(services, "import", filename="import.xml")

        assert response.body.startswith("failure\n")
        assert response.status == 200

    def test_import_reads_object_store_mirror(self, services, object_store, import_xml):
        """Test a file staged on another host is read from the mirror."""
        object_store.objects["exchange/import.xml"] = import_xml

        assert call(services, "import", filename="import.xml").body == "success"

    def test_malformed_feed(self, services):
        """Test malformed XML is reported and nothing is applied."""
        call(services, "file", "POST", filename="import.xml", body=b"<broken")

        response = call(services, "import", filename="import.xml")

        assert response.body.startswith("failure\nMalformed XML")
        assert run(services.store.get_products()) == []

    def test_out_of_range_price_skips_offer(self, services, import_xml):
        """Test an unrepresentable price skips its offer and the rest still apply."""
        call(services, "import", "POST", filename="import.xml", body=import_xml)
        offers = (
            "<КоммерческаяИнформация><ПакетПредложений><Предложения>"
            "<Предложение><Ид>E1</Ид><Цены><Цена><ЦенаЗаЕдиницу>1234567890123456789012345678"
            "</ЦенаЗаЕдиницу></Цена></Цены></Предложение>"
            "<Предложение><Ид>E2</Ид><Цены><Цена><ЦенаЗаЕдиницу>100</ЦенаЗаЕдиницу></Цена></Цены></Предложение>"
            "</Предложения></ПакетПредложений></КоммерческаяИнформация>"
        ).encode("utf-8")

        response = call(services, "import", "POST", filename="offers.xml", body=offers)

        assert response.body == "success"
        assert run(services.store.get_product_by_external_id("E1")).price == 0
        assert run(services.store.get_product_by_external_id("E2")).price == 10000

    def test_file_limit(self, services):
        services.settings.file_limit = 10

        response = call(services, "file", "POST", filename="import.xml", body=b"x" * 11)

        assert response.status == 413
        assert services.staging.list_local() == []

    def test_file_requires_post_and_name(self, services):
        assert call(services, "file", "GET", filename="import.xml").status == 405
        assert call(services, "file", "POST", body=b"x").status == 400

    def test_bad_image(self, services, object_store):
        response = call(services, "file", "POST", filename="photo.jpg", body=b"not an image")

        assert response.body.startswith("failure\nError saving image")
        assert object_store.objects == {}

    def test_unknown_mode(self, services):
        response = call(services, "deactivate")

        assert response.status == 400
        assert response.body == "failure\nUnsupported mode"


class TestSaleSession:
    """Tests for the order export session."""

    def test_query_exports_pending_orders(self, services):
        """Test pending orders export with ERP product ids."""
        store = services.store
        product = run(store.create_product(ProductCreate(external_id="E1", name="Худи", price=350000)))
        run(store.add_to_cart(CartItemCreate(session_id="s1", product_id=product.id, quantity=2)))
        order = run(store.create_order(OrderCreate(
            session_id="s1",
            customer_name="Иван",
            customer_email="ivan@example.com",
            customer_phone="+79000000000",
            address="Тула",
        )))

        response = call(services, "query", type="sale")

        assert response.content_type.startswith("application/xml")
        root = ET.fromstring(response.body)
        document = root.find("Документ")
        assert document.findtext("Ид") == str(order.id)
        assert document.findtext("Товары/Товар/Ид") == "E1"
        assert document.findtext("Сумма") == "7000.00"

        run(store.update_order_status(order.id, "confirmed"))
        root = ET.fromstring(call(services, "query", type="sale").body)
        assert root.findall("Документ") == []

    def test_success_is_acknowledged(self, services):
        assert call(services, "success", type="sale").body == "success"

    def test_sale_checkauth(self, services):
        assert call(services, "checkauth", type="sale").body.startswith("success\n")
