"""Pytest fixtures and configuration."""

import base64
import os
from io import BytesIO

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from catalog_sync.api import build_services, create_app
from catalog_sync.backend import InMemoryBackend
from catalog_sync.config import Settings
from catalog_sync.exceptions import ObjectStoreError
from catalog_sync.images import ImagePipeline, ImageUrlResolver
from catalog_sync.importer import CatalogImporter
from catalog_sync.store import CatalogStore

os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
os.environ["AWS_ACCESS_KEY_ID"] = "testing"
os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"

EXCHANGE_USER = "admin"
EXCHANGE_PASSWORD = "secret"


class FakeObjectStore:
    """In-memory object store with the ObjectStore interface."""

    def __init__(self, bucket="test-bucket", endpoint="https://storage.example.com"):
        self.bucket = bucket
        self.endpoint = endpoint
        self.objects = {}
        self.uploads = []
        self.failing_keys = set()

    def public_url(self, key):
        return f"{self.endpoint}/{self.bucket}/{key}"

    def upload(self, key, data, content_type=None, cache_control=None):
        if key in self.failing_keys:
            raise ObjectStoreError(message="upload refused", bucket=self.bucket, key=key, operation="PutObject")
        self.objects[key] = data
        self.uploads.append((key, content_type, cache_control))
        return self.public_url(key)

    def download(self, key):
        if key in self.failing_keys or key not in self.objects:
            raise ObjectStoreError(message="no such key", bucket=self.bucket, key=key)
        return self.objects[key]

    def list_keys(self, prefix=""):
        return sorted(k for k in self.objects if k.startswith(prefix))

    def delete(self, key):
        self.objects.pop(key, None)


def make_image(fmt="JPEG", size=(600, 400), color=(200, 30, 30)):
    """Encode a solid-colour image in the given format."""
    image = Image.new("RGB", size, color)
    if fmt == "GIF":
        image = image.convert("P")
    buffer = BytesIO()
    image.save(buffer, format=fmt)
    return buffer.getvalue()


def basic_auth(username=EXCHANGE_USER, password=EXCHANGE_PASSWORD):
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


@pytest.fixture
def settings(tmp_path):
    """Settings with exchange credentials and keys, local directories under tmp_path."""
    return Settings(
        exchange_username=EXCHANGE_USER,
        exchange_password=EXCHANGE_PASSWORD,
        admin_api_key="admin-key",
        sync_api_key="sync-key",
        exchange_dir=str(tmp_path / "uploads"),
        media_dir=str(tmp_path / "media"),
        reconcile_interval_seconds=0,
    )


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def store(backend):
    return CatalogStore(backend)


@pytest.fixture
def object_store():
    return FakeObjectStore()


@pytest.fixture
def resolver(object_store):
    return ImageUrlResolver(object_store, prefix="products")


@pytest.fixture
def pipeline(object_store):
    return ImagePipeline(object_store, prefix="products")


@pytest.fixture
def importer(store, resolver):
    return CatalogImporter(store, resolver)


@pytest.fixture
def services(settings, backend, object_store):
    return build_services(settings, backend=backend, object_store=object_store)


@pytest.fixture
def client(services):
    return TestClient(create_app(services=services))


@pytest.fixture
def import_xml():
    """Catalog feed with one hoodie and one sock product."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<КоммерческаяИнформация xmlns="urn:1C.ru:commerceml_2" ВерсияСхемы="2.04">
  <Каталог>
    <Ид>catalog-1</Ид>
    <Товары>
      <Товар>
        <Ид>E1</Ид>
        <Артикул>H100</Артикул>
        <Наименование>Худи Test</Наименование>
        <Описание>Тёплое худи</Описание>
        <Картинка>import_files/e1/hoodie.jpg</Картинка>
        <ХарактеристикиТовара>
          <ХарактеристикаТовара>
            <Наименование>Размер</Наименование>
            <Значение>M</Значение>
          </ХарактеристикаТовара>
          <ХарактеристикаТовара>
            <Наименование>Размер</Наименование>
            <Значение>L</Значение>
          </ХарактеристикаТовара>
          <ХарактеристикаТовара>
            <Наименование>Цвет</Наименование>
            <Значение>Чёрный</Значение>
          </ХарактеристикаТовара>
        </ХарактеристикиТовара>
      </Товар>
      <Товар>
        <Ид>E2</Ид>
        <Артикул>GR1234</Артикул>
        <Наименование>Носки спортивные</Наименование>
      </Товар>
    </Товары>
  </Каталог>
</КоммерческаяИнформация>
""".encode("utf-8")


@pytest.fixture
def offers_xml():
    """Offers feed pricing E1, a characteristic offer of E2 and an unknown product."""
    return """<?xml version="1.0" encoding="UTF-8"?>
<КоммерческаяИнформация ВерсияСхемы="2.04">
  <ПакетПредложений>
    <Предложения>
      <Предложение>
        <Ид>E1</Ид>
        <Цены>
          <Цена>
            <ЦенаЗаЕдиницу>3500,00</ЦенаЗаЕдиницу>
          </Цена>
        </Цены>
      </Предложение>
      <Предложение>
        <Ид>E2#size-40</Ид>
        <Цены>
          <Цена>
            <ЦенаЗаЕдиницу>450.5</ЦенаЗаЕдиницу>
          </Цена>
        </Цены>
      </Предложение>
      <Предложение>
        <Ид>E404</Ид>
        <Цены>
          <Цена>
            <ЦенаЗаЕдиницу>100</ЦенаЗаЕдиницу>
          </Цена>
        </Цены>
      </Предложение>
    </Предложения>
  </ПакетПредложений>
</КоммерческаяИнформация>
""".encode("utf-8")
