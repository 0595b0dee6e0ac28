"""Snapshot export/import for the LocalStore.

A snapshot is one JSON document whose top-level keys are collection names and
whose values are the ordered records of each collection. ``settings`` has no
fixed schema and is exported as ``{"key": ..., "value": ...}`` pairs.

Material payloads are either stripped (lightweight snapshots) or transcoded
to base64 (full backups meant for remote storage).
"""

import base64
import binascii
import copy
import json
import logging
from typing import Any, Dict, List, Optional, Tuple, Union

from .domain import Collection, MaterialType, SyncStatus, TRANSIENT_STATUSES
from .domain.models import INLINE_MATERIAL_TYPES
from .events import SYNC_ORIGIN
from .storage import LocalStore


logger = logging.getLogger(__name__)

Snapshot = Dict[str, List[Any]]

BASE64_ENCODING = "base64"


class SnapshotError(Exception):
    """A snapshot could not be produced, parsed or applied."""
    pass


def _is_binary_material(record: Dict[str, Any]) -> bool:
    content = record.get("content")
    if isinstance(content, dict):
        return True
    if content is not None:
        return False
    try:
        return MaterialType(record.get("type", MaterialType.FILE.value)) not in INLINE_MATERIAL_TYPES
    except ValueError:
        return True


class ExportCodec:
    """Serializes the whole LocalStore into a snapshot and restores it."""

    def __init__(self, store: LocalStore):
        self.store = store
        self.logger = logging.getLogger(__name__)

    # Export

    async def export(self, strip_binary_content: bool = True) -> Snapshot:
        """Export every collection.

        Args:
            strip_binary_content: Omit material payloads (True) or embed them
                as base64 (False)

        Returns:
            Snapshot mapping collection name -> list of records
        """
        snapshot: Snapshot = {}
        self.logger.debug("Starting snapshot export")

        for collection in Collection:
            if collection is Collection.SETTINGS:
                items = await self.store.get_items(collection)
                snapshot[collection.value] = [{"key": key, "value": value} for key, value in items]
            elif collection is Collection.MATERIALS:
                records = await self.store.get_all(collection)
                snapshot[collection.value] = [
                    self._export_material(record, strip_binary_content) for record in records
                ]
            else:
                snapshot[collection.value] = await self.store.get_all(collection)
            self.logger.debug(f"Exported {len(snapshot[collection.value])} items from {collection.value}")

        return snapshot

    @staticmethod
    def _export_material(record: Dict[str, Any], strip: bool) -> Dict[str, Any]:
        content = record.get("content")
        if not isinstance(content, dict) or content.get("data") is None:
            return record

        exported = dict(record)
        exported_content = {k: v for k, v in content.items() if k != "data"}
        if not strip:
            exported_content["data"] = base64.b64encode(bytes(content["data"])).decode("ascii")
            exported_content["encoding"] = BASE64_ENCODING
        exported["content"] = exported_content
        return exported

    @staticmethod
    def dumps(snapshot: Snapshot) -> bytes:
        """Serialize a snapshot to UTF-8 JSON."""
        try:
            return json.dumps(snapshot, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SnapshotError(f"Snapshot is not serializable: {e}") from e

    @staticmethod
    def loads(data: Union[bytes, str]) -> Snapshot:
        """Parse a serialized snapshot."""
        try:
            if isinstance(data, bytes):
                data = data.decode("utf-8")
            snapshot = json.loads(data)
        except (UnicodeDecodeError, ValueError) as e:
            raise SnapshotError(f"Invalid backup file format: {e}") from e

        if not isinstance(snapshot, dict):
            raise SnapshotError("Invalid backup file format: top level must be an object")
        return snapshot

    # Import

    async def import_snapshot(self, snapshot: Snapshot, origin: str = SYNC_ORIGIN):
        """Replace local collections with the snapshot's contents.

        The snapshot is fully validated and decoded before the store is
        touched; every collection present is then cleared and repopulated in
        one transaction, followed by exactly one change notification.

        Raises:
            SnapshotError: If the snapshot is malformed
        """
        if not isinstance(snapshot, dict):
            raise SnapshotError("Invalid backup file format: top level must be an object")

        for name in snapshot:
            if name not in {c.value for c in Collection}:
                self.logger.warning(f"Ignoring unknown collection '{name}' in snapshot")

        prior_payloads = await self._prior_material_payloads()
        contents: Dict[Collection, List[Tuple[str, Any]]] = {}

        for collection in Collection:
            if collection.value not in snapshot:
                continue
            items = snapshot[collection.value]
            if not isinstance(items, list):
                raise SnapshotError(f"Collection '{collection.value}' must be a list")

            if collection is Collection.SETTINGS:
                contents[collection] = self._prepare_settings(items)
            else:
                contents[collection] = self._prepare_records(collection, items, prior_payloads)

        await self.store.replace_collections(contents, origin=origin)
        self.logger.info(
            "Imported snapshot: "
            + ", ".join(f"{c.value}={len(rows)}" for c, rows in contents.items())
        )

    async def _prior_material_payloads(self) -> Dict[str, Dict[str, Any]]:
        payloads = {}
        for record in await self.store.get_all(Collection.MATERIALS):
            content = record.get("content") if isinstance(record, dict) else None
            if isinstance(content, dict) and content.get("data") is not None:
                payloads[record["id"]] = content
        return payloads

    def _prepare_settings(self, items: List[Any]) -> List[Tuple[str, Any]]:
        rows = []
        for item in items:
            if isinstance(item, dict) and isinstance(item.get("key"), str):
                rows.append((item["key"], item.get("value")))
            else:
                self.logger.warning(f"Skipping invalid settings item during import: {item!r}")
        return rows

    def _prepare_records(self, collection: Collection, items: List[Any],
                         prior_payloads: Dict[str, Dict[str, Any]]) -> List[Tuple[str, Any]]:
        rows = []
        for item in items:
            if not isinstance(item, dict) or not isinstance(item.get("id"), str):
                self.logger.warning(
                    f"Skipping invalid item in {collection.value} during import (missing or invalid id)"
                )
                continue

            record = copy.deepcopy(item)
            if record.get("syncStatus") in {s.value for s in TRANSIENT_STATUSES}:
                record["syncStatus"] = SyncStatus.IDLE.value
            if collection is Collection.MATERIALS:
                record = self._import_material(record, prior_payloads.get(record["id"]))
            rows.append((record["id"], record))
        return rows

    def _import_material(self, record: Dict[str, Any],
                         prior_content: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        content = record.get("content")

        if isinstance(content, dict) and content.get("data") is not None:
            if content.get("encoding") == BASE64_ENCODING or isinstance(content["data"], str):
                try:
                    decoded = base64.b64decode(content["data"], validate=True)
                except (binascii.Error, ValueError, TypeError) as e:
                    raise SnapshotError(f"Material {record['id']} has an undecodable payload: {e}") from e
                content = {k: v for k, v in content.items() if k != "encoding"}
                content["data"] = decoded
                record["content"] = content
            return record

        if not _is_binary_material(record):
            return record

        if prior_content is not None:
            merged = dict(content) if isinstance(content, dict) else {}
            merged["data"] = prior_content["data"]
            merged.setdefault("mimeType", prior_content.get("mimeType"))
            record["content"] = merged
            self.logger.debug(f"Preserved local payload for material {record['id']}")
        else:
            record["syncStatus"] = SyncStatus.DOWNLOAD_PENDING.value
        return record
