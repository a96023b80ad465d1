"""
CommerceML exchange protocol handler.

Speaks the 1C exchange session (checkauth -> init -> file* -> import for
``type=catalog``; checkauth -> init -> query -> success for ``type=sale``)
independently of the web framework: the HTTP route builds an
ExchangeRequest and writes back the ExchangeResponse.

Responses are the plain-text sentinels the ERP client expects:
``success``, ``failure\\n<reason>``, or the checkauth/init blocks.
"""

import asyncio
import base64
import binascii
import hmac
import logging
from dataclasses import dataclass, field
from typing import Optional, Union

from catalog_sync.commerceml import export_orders, parse_feed
from catalog_sync.config import Settings
from catalog_sync.exceptions import (
    AuthenticationError,
    ImageProcessingError,
    MalformedFeedError,
    StorageError,
)
from catalog_sync.images import ImagePipeline, is_image_filename
from catalog_sync.importer import CatalogImporter
from catalog_sync.logging_config import LogContext
from catalog_sync.staging import StagingArea
from catalog_sync.store import CatalogStore

logger = logging.getLogger(__name__)

TEXT_CONTENT_TYPE = "text/plain; charset=utf-8"
XML_CONTENT_TYPE = "application/xml; charset=utf-8"


@dataclass
class ExchangeRequest:
    method: str
    type: str
    mode: str
    filename: Optional[str] = None
    body: bytes = b""
    authorization: Optional[str] = None


@dataclass
class ExchangeResponse:
    body: Union[str, bytes]
    status: int = 200
    content_type: str = TEXT_CONTENT_TYPE
    headers: dict = field(default_factory=dict)

    @classmethod
    def success(cls) -> "ExchangeResponse":
        return cls("success")

    @classmethod
    def failure(cls, reason: str, status: int = 200) -> "ExchangeResponse":
        return cls(f"failure\n{reason}", status=status)


def parse_basic_auth(header: Optional[str]) -> Optional[tuple]:
    """Decode an ``Authorization: Basic`` header into (username, password)."""
    if not header:
        return None
    scheme, _, token = header.strip().partition(" ")
    if scheme.lower() != "basic" or not token:
        return None
    try:
        decoded = base64.b64decode(token.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


class ExchangeHandler:
    """
    Dispatches exchange requests by (type, mode) after authenticating them.

    Args:
        settings: Service settings (credentials, file limit, export statuses)
        store: Catalog store
        importer: Feed importer
        staging: Staging area for non-image uploads
        pipeline: Image pipeline for image uploads
    """

    def __init__(
        self,
        settings: Settings,
        store: CatalogStore,
        importer: CatalogImporter,
        staging: StagingArea,
        pipeline: ImagePipeline,
    ):
        self.settings = settings
        self.store = store
        self.importer = importer
        self.staging = staging
        self.pipeline = pipeline
        self._routes = {
            ("catalog", "checkauth"): self.checkauth,
            ("sale", "checkauth"): self.checkauth,
            ("catalog", "init"): self.init,
            ("sale", "init"): self.init,
            ("catalog", "file"): self.upload_file,
            ("catalog", "import"): self.import_feed,
            ("sale", "query"): self.query_orders,
            ("sale", "success"): self.confirm_orders,
        }

    def authenticate(self, authorization: Optional[str]) -> None:
        """
        Check HTTP Basic credentials in constant time.

        Raises:
            AuthenticationError: If credentials are missing, wrong or not configured
        """
        if not self.settings.exchange_enabled:
            raise AuthenticationError("Exchange credentials are not configured")
        credentials = parse_basic_auth(authorization)
        if credentials is None:
            raise AuthenticationError("Missing or malformed Basic credentials")

        username, password = credentials
        user_ok = hmac.compare_digest(
            username.encode("utf-8"), self.settings.exchange_username.encode("utf-8")
        )
        password_ok = hmac.compare_digest(
            password.encode("utf-8"), self.settings.exchange_password.encode("utf-8")
        )
        if not (user_ok and password_ok):
            raise AuthenticationError("Invalid credentials")

    def unauthorized(self, error: AuthenticationError, mode: str = "") -> ExchangeResponse:
        logger.warning(f"Exchange request rejected: {error.message}", extra={"mode": mode})
        return ExchangeResponse(
            "failure\nUnauthorized",
            status=401,
            headers={"WWW-Authenticate": f'Basic realm="{error.realm}"'},
        )

    async def handle(self, request: ExchangeRequest) -> ExchangeResponse:
        try:
            self.authenticate(request.authorization)
        except AuthenticationError as e:
            return self.unauthorized(e, request.mode)

        route = self._routes.get((request.type, request.mode))
        if route is None:
            logger.warning(f"Unsupported exchange mode type={request.type} mode={request.mode}")
            return ExchangeResponse.failure("Unsupported mode", status=400)

        with LogContext():
            logger.info(
                f"Exchange {request.method} type={request.type} mode={request.mode}",
                extra={"mode": request.mode, "filename": request.filename},
            )
            return await route(request)

    async def checkauth(self, request: ExchangeRequest) -> ExchangeResponse:
        return ExchangeResponse(
            f"success\n{self.settings.exchange_session_cookie}\n{self.settings.exchange_session_token}"
        )

    async def init(self, request: ExchangeRequest) -> ExchangeResponse:
        return ExchangeResponse(f"zip=no\nfile_limit={self.settings.file_limit}")

    async def upload_file(self, request: ExchangeRequest) -> ExchangeResponse:
        if request.method != "POST":
            return ExchangeResponse.failure("POST required", status=405)
        if not request.filename:
            return ExchangeResponse.failure("Filename is required", status=400)
        if len(request.body) > self.settings.file_limit:
            logger.warning(
                f"Upload {request.filename} exceeds file limit: {len(request.body)} > {self.settings.file_limit}",
                extra={"filename": request.filename},
            )
            return ExchangeResponse.failure("File exceeds file_limit", status=413)

        if is_image_filename(request.filename):
            try:
                await asyncio.to_thread(self.pipeline.ingest, request.filename, request.body)
            except (ImageProcessingError, StorageError) as e:
                logger.error(f"Image upload failed: {e.message}", extra={"filename": request.filename})
                return ExchangeResponse.failure(f"Error saving image: {e.message}")
            return ExchangeResponse.success()

        try:
            await asyncio.to_thread(self.staging.save, request.filename, request.body)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to stage {request.filename}: {e}", extra={"filename": request.filename})
            return ExchangeResponse.failure(f"Error saving file: {e}")
        return ExchangeResponse.success()

    async def _read_payload(self, request: ExchangeRequest) -> bytes:
        if request.method == "POST" and request.body:
            return request.body
        if not request.filename:
            raise FileNotFoundError("Filename is required")
        return await asyncio.to_thread(self.staging.read, request.filename)

    async def import_feed(self, request: ExchangeRequest) -> ExchangeResponse:
        try:
            payload = await self._read_payload(request)
        except (FileNotFoundError, ValueError) as e:
            logger.warning(f"Import payload unavailable: {e}", extra={"filename": request.filename})
            return ExchangeResponse.failure(str(e))

        try:
            feed = await asyncio.to_thread(parse_feed, payload, request.filename)
        except MalformedFeedError as e:
            logger.error(f"Import aborted: {e.message}", extra={"filename": request.filename})
            return ExchangeResponse.failure(e.message)

        try:
            await self.importer.apply_feed(feed, request.filename)
        except StorageError as e:
            logger.error(f"Import failed on storage: {e.message}", extra={"filename": request.filename})
            return ExchangeResponse.failure(f"Storage error: {e.message}")
        return ExchangeResponse.success()

    async def query_orders(self, request: ExchangeRequest) -> ExchangeResponse:
        try:
            orders = await self.store.list_orders(self.settings.sale_export_statuses)
            external_ids = {}
            for product_id in {item.product_id for order in orders for item in order.items}:
                product = await self.store.get_product(product_id)
                if product is not None and product.external_id:
                    external_ids[product_id] = product.external_id
        except StorageError as e:
            logger.error(f"Order export failed: {e.message}")
            return ExchangeResponse.failure(f"Storage error: {e.message}")

        logger.info(f"Exporting {len(orders)} orders")
        return ExchangeResponse(
            export_orders(orders, external_ids),
            content_type=XML_CONTENT_TYPE,
        )

    async def confirm_orders(self, request: ExchangeRequest) -> ExchangeResponse:
        # Order status is advanced by operators, not by the ERP acknowledgement.
        logger.info("ERP confirmed order export")
        return ExchangeResponse.success()
