import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests
from django.conf import settings
from django.db import DatabaseError, connections, transaction
from django.utils import timezone

from .exceptions import ReferenceNotFound
from .models import Part, PartAdditionalField, PartShopifyData
from .routers import WAREHOUSE_ALIAS

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10
REFERENCE_TABLE = "nsproduct"

PRODUCT_BY_ID_QUERY = """
query($id: ID!) {
    product(id: $id) {
        id
        handle
        title
        vendor
        productType
        status
        onlineStoreUrl
        featuredMedia {
            ... on MediaImage {
                image {
                    url
                    altText
                    width
                    height
                }
            }
        }
        images(first: 10) {
            nodes {
                url
                altText
                width
                height
            }
        }
        variants(first: 10) {
            nodes {
                sku
                price
                compareAtPrice
                availableForSale
                inventoryQuantity
            }
        }
    }
}
"""


@dataclass(frozen=True)
class ReferenceEntry:
    nsitem_id: str
    oem: Optional[str]
    number: str
    shop_id: Optional[str]
    name: Optional[str]


@dataclass(frozen=True)
class LookupCriterion:
    part_id: int
    manufacturer: str
    part_number: str


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


class ReferenceCatalog:
    """Read-only lookups against the warehouse ``nsproduct`` table."""

    columns = ("nsitem_id", "oem", "number", "shop_id", "name")

    def __init__(self, alias: str = WAREHOUSE_ALIAS) -> None:
        self.alias = alias

    def _select(self, where_sql: str, params: Sequence[object]) -> List[ReferenceEntry]:
        connection = connections[self.alias]
        table = connection.ops.quote_name(REFERENCE_TABLE)
        select_sql = f"SELECT {', '.join(self.columns)} FROM {table} WHERE {where_sql}"
        with connection.cursor() as cursor:
            cursor.execute(select_sql, list(params))
            rows = cursor.fetchall()
        return [
            ReferenceEntry(
                nsitem_id=str(row[0]),
                oem=row[1],
                number=str(row[2]).strip(),
                shop_id=str(row[3]) if row[3] not in (None, "") else None,
                name=row[4],
            )
            for row in rows
        ]

    def find(self, manufacturer: str, part_number: str) -> ReferenceEntry:
        """Fuzzy manufacturer, exact part number. Raises ReferenceNotFound on a miss."""
        try:
            entries = self._select("oem LIKE %s AND number = %s", [f"%{manufacturer}%", part_number])
        except DatabaseError:
            logger.exception(
                "Reference lookup failed for manufacturer=%s part_number=%s", manufacturer, part_number
            )
            entries = []
        if not entries:
            raise ReferenceNotFound(f"No reference entry for {manufacturer} / {part_number}")
        return entries[0]

    def find_many(self, criteria: Iterable[LookupCriterion]) -> Dict[int, ReferenceEntry]:
        """Batch lookup with one query per manufacturer. Misses are simply absent."""
        part_ids_by_manufacturer: Dict[str, Dict[str, List[int]]] = {}
        for criterion in criteria:
            numbers = part_ids_by_manufacturer.setdefault(criterion.manufacturer.strip(), {})
            numbers.setdefault(criterion.part_number.strip(), []).append(criterion.part_id)

        matches: Dict[int, ReferenceEntry] = {}
        for manufacturer, part_ids_by_number in part_ids_by_manufacturer.items():
            part_numbers = list(part_ids_by_number)
            placeholders = ", ".join(["%s"] * len(part_numbers))
            try:
                entries = self._select(
                    f"oem LIKE %s AND number IN ({placeholders})",
                    [f"%{manufacturer}%", *part_numbers],
                )
            except DatabaseError:
                logger.exception(
                    "Batch reference lookup failed for manufacturer=%s (%s part numbers)",
                    manufacturer,
                    len(part_numbers),
                )
                continue
            for entry in entries:
                for part_id in part_ids_by_number.get(entry.number, []):
                    matches[part_id] = entry
        return matches


class ShopifyClient:
    def __init__(
        self,
        shop_domain: Optional[str] = None,
        access_token: Optional[str] = None,
        storefront_domain: Optional[str] = None,
        api_version: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.shop_domain = shop_domain if shop_domain is not None else getattr(settings, "SHOPIFY_SHOP_DOMAIN", "")
        self.access_token = (
            access_token if access_token is not None else getattr(settings, "SHOPIFY_ACCESS_TOKEN", "")
        )
        self.storefront_domain = storefront_domain or getattr(
            settings, "SHOPIFY_STOREFRONT_DOMAIN", "aircompressorservices.com"
        )
        self.api_version = api_version or getattr(settings, "SHOPIFY_API_VERSION", "2025-04")
        self.timeout = timeout or getattr(settings, "SHOPIFY_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)
        self.session = session or requests.Session()

    @property
    def is_configured(self) -> bool:
        return bool(self.shop_domain and self.access_token)

    @property
    def graphql_url(self) -> str:
        return f"https://{self.shop_domain}/admin/api/{self.api_version}/graphql.json"

    @property
    def shop_name(self) -> str:
        return self.shop_domain.replace(".myshopify.com", "")

    def storefront_url(self, handle: Optional[str]) -> Optional[str]:
        if not handle:
            return None
        return f"https://{self.storefront_domain}/products/{handle}"

    def admin_url(self, shopify_id: Optional[str]) -> Optional[str]:
        if not shopify_id:
            return None
        return f"https://admin.shopify.com/store/{self.shop_name}/products/{shopify_id}"

    def get_product_by_id(self, shopify_id: str) -> Optional[Dict[str, Any]]:
        """Fetch a live product snapshot. Any failure is logged and yields None."""
        if not self.is_configured:
            logger.error("Shopify domain or access token is not configured.")
            return None

        try:
            response = self.session.post(
                self.graphql_url,
                json={
                    "query": PRODUCT_BY_ID_QUERY,
                    "variables": {"id": f"gid://shopify/Product/{shopify_id}"},
                },
                headers={
                    "X-Shopify-Access-Token": self.access_token,
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException:
            logger.exception("Shopify request failed for product %s", shopify_id)
            return None

        if response.status_code >= 400:
            logger.warning(
                "Shopify product query failed for %s: HTTP %s %s",
                shopify_id,
                response.status_code,
                response.text[:500],
            )
            return None

        try:
            payload = response.json()
        except ValueError:
            logger.warning("Shopify returned a non-JSON body for product %s", shopify_id)
            return None

        product = _dig(payload, "data", "product")
        if not product:
            return None
        return self._snapshot(str(shopify_id), product)

    def _snapshot(self, shopify_id: str, product: Dict[str, Any]) -> Dict[str, Any]:
        handle = product.get("handle")
        status = product.get("status")
        return {
            "shopify_id": shopify_id,
            "handle": handle,
            "title": product.get("title"),
            "vendor": product.get("vendor"),
            "product_type": product.get("productType"),
            "status": status.lower() if status else None,
            "featured_image_url": _dig(product, "featuredMedia", "image", "url"),
            "storefront_url": self.storefront_url(handle),
            "admin_url": self.admin_url(shopify_id),
            "all_images": [
                {
                    "url": image.get("url"),
                    "alt": image.get("altText"),
                    "width": image.get("width"),
                    "height": image.get("height"),
                }
                for image in (_dig(product, "images", "nodes") or [])
            ],
            "variant_data": [
                {
                    "sku": variant.get("sku"),
                    "price": variant.get("price"),
                    "compare_at_price": variant.get("compareAtPrice"),
                    "available_for_sale": variant.get("availableForSale") or False,
                    "inventory_quantity": variant.get("inventoryQuantity") or 0,
                }
                for variant in (_dig(product, "variants", "nodes") or [])
            ],
            "online_store_url": product.get("onlineStoreUrl") or self.storefront_url(handle),
        }


class CatalogSyncService:
    """Reconcile parts against the warehouse reference table and Shopify."""

    def __init__(
        self,
        catalog: Optional[ReferenceCatalog] = None,
        client: Optional[ShopifyClient] = None,
        batch_size: Optional[int] = None,
    ) -> None:
        self.catalog = catalog or ReferenceCatalog()
        self.client = client or ShopifyClient()
        self.batch_size = batch_size or getattr(settings, "SHOPIFY_BATCH_SIZE", 10)

    def sync_part(self, part: Part) -> bool:
        if not part.manufacturer or not part.part_number:
            logger.warning("Skipping part %s - missing manufacturer or part_number", part.pk)
            return False

        try:
            entry = self.catalog.find(part.manufacturer.strip(), part.part_number.strip())
        except ReferenceNotFound:
            logger.info(
                "No reference entry for part %s (%s / %s)", part.pk, part.manufacturer, part.part_number
            )
            return False

        self._store_netsuite_ids({part.pk: entry})
        live_data = self.client.get_product_by_id(entry.shop_id) if entry.shop_id else None
        self._store_snapshot(part, live_data, entry)
        logger.info(
            "Synced part %s - reference %s, Shopify: %s",
            part.pk,
            entry.nsitem_id,
            "yes" if live_data else "no",
        )
        return True

    def sync_parts(self, part_ids: Sequence[int]) -> Dict[str, int]:
        results = {"synced": 0, "failed": 0, "not_found": 0}
        parts = list(
            Part.objects.filter(pk__in=part_ids)
            .exclude(manufacturer__isnull=True)
            .exclude(manufacturer="")
            .exclude(part_number="")
            .order_by("pk")
        )
        logger.info("Starting catalog sync for %s parts", len(parts))

        matches = self.catalog.find_many(
            LookupCriterion(part_id=part.pk, manufacturer=part.manufacturer, part_number=part.part_number)
            for part in parts
        )
        logger.info("Found %s reference matches", len(matches))
        self._store_netsuite_ids(matches)

        live_data_by_part = self._fetch_live_data(matches)

        for part in parts:
            entry = matches.get(part.pk)
            if entry is None:
                results["not_found"] += 1
                continue
            try:
                self._store_snapshot(part, live_data_by_part.get(part.pk), entry)
            except DatabaseError:
                logger.exception("Failed to store catalog snapshot for part %s", part.pk)
                results["failed"] += 1
            else:
                results["synced"] += 1
        return results

    def _fetch_live_data(self, matches: Dict[int, ReferenceEntry]) -> Dict[int, Dict[str, Any]]:
        lookups = [(part_id, entry.shop_id) for part_id, entry in matches.items() if entry.shop_id]
        live_data: Dict[int, Dict[str, Any]] = {}
        for offset in range(0, len(lookups), self.batch_size):
            for part_id, shop_id in lookups[offset:offset + self.batch_size]:
                product = self.client.get_product_by_id(shop_id)
                if product:
                    live_data[part_id] = product
        return live_data

    def _store_netsuite_ids(self, matches: Dict[int, ReferenceEntry]) -> None:
        if not matches:
            return
        field_name = PartAdditionalField.NETSUITE_ITEM_ID_FIELD
        with transaction.atomic():
            existing = {
                field.part_id: field
                for field in PartAdditionalField.objects.filter(part_id__in=list(matches), field_name=field_name)
            }
            to_update = []
            to_create = []
            for part_id, entry in matches.items():
                field = existing.get(part_id)
                if field is None:
                    to_create.append(
                        PartAdditionalField(part_id=part_id, field_name=field_name, field_value=entry.nsitem_id)
                    )
                else:
                    field.field_value = entry.nsitem_id
                    field.updated_at = timezone.now()
                    to_update.append(field)
            if to_update:
                PartAdditionalField.objects.bulk_update(to_update, ["field_value", "updated_at"])
            if to_create:
                PartAdditionalField.objects.bulk_create(to_create)

    def _store_snapshot(
        self,
        part: Part,
        live_data: Optional[Dict[str, Any]],
        entry: ReferenceEntry,
    ) -> PartShopifyData:
        live_data = live_data or {}
        snapshot, _ = PartShopifyData.objects.update_or_create(
            part=part,
            defaults={
                "shopify_id": live_data.get("shopify_id") or entry.shop_id,
                "handle": live_data.get("handle"),
                "title": live_data.get("title") or entry.name,
                "vendor": live_data.get("vendor") or entry.oem,
                "product_type": live_data.get("product_type"),
                "status": live_data.get("status"),
                "featured_image_url": live_data.get("featured_image_url"),
                "storefront_url": live_data.get("storefront_url"),
                "admin_url": live_data.get("admin_url"),
                "all_images": live_data.get("all_images") or [],
                "variant_data": live_data.get("variant_data") or [],
                "last_synced_at": timezone.now(),
            },
        )
        return snapshot
