"""
Outline documents (webhook).

Task lines (`- [ ] text` / `- [x] text`) inside a document become blocks on
the document's event. Deliveries can arrive out of order, so each task line
is identified by `build_task_hash(document id, line number, text)` and every
delivery is reconciled against the blocks already stored: new hashes are
added, known hashes updated, missing hashes soft-deleted.
"""

from __future__ import annotations

import hashlib
import hmac
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Mapping

import structlog

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData, StoredBlock
from spark.canonical.store import CanonicalStore
from spark.canonical.writer import ITEM_ERRORS, IngestReport, write_event
from spark.integrations.config_schema import ConfigField
from spark.integrations.models import Integration
from spark.kernel.errors import MalformedPayload
from spark.kernel.hashing import build_task_hash
from spark.kernel.time import isoformat_z
from spark.plugins.contracts import Capability, PluginContext, ProviderPlugin, WebhookChunk

logger = structlog.get_logger()

TASK_LINE = re.compile(r"^\s*- \[( |x|X)\] (.*)$")
DAY_NOTE_TITLE = re.compile(r"^(\d{4}-\d{2}-\d{2}): [A-Za-z]+$")
TASK_BLOCK_TYPES = ("day_task", "doc_task")

DOCUMENT_EVENTS = {"documents.create", "documents.update", "documents.publish"}
DELETE_EVENTS = {"documents.delete", "documents.archive"}


def signature_for(body: bytes, secret: str, timestamp: str) -> str:
    """`Outline-Signature` value: `t=<timestamp>,s=<hex hmac of "<timestamp>.<body>">`."""
    digest = hmac.new(secret.encode("utf-8"), f"{timestamp}.".encode("utf-8") + body, hashlib.sha256).hexdigest()
    return f"t={timestamp},s={digest}"


def _parse_signature(header: str) -> tuple[str | None, str | None]:
    parts = dict(part.split("=", 1) for part in header.split(",") if "=" in part)
    return parts.get("t"), parts.get("s")


@dataclass(frozen=True)
class TaskLine:
    hash: str
    line_number: int
    text: str
    checked: bool


def extract_tasks(document_id: str, text: str) -> list[TaskLine]:
    tasks = []
    for index, line in enumerate((text or "").splitlines(), start=1):
        match = TASK_LINE.match(line)
        if not match:
            continue
        task_text = match.group(2).strip()
        tasks.append(
            TaskLine(
                hash=build_task_hash(document_id, index, task_text),
                line_number=index,
                text=task_text,
                checked=match.group(1).lower() == "x",
            )
        )
    return tasks


def day_note_date(document: dict[str, Any], daynotes_collection_id: str | None) -> str | None:
    if not daynotes_collection_id or document.get("collectionId") != daynotes_collection_id:
        return None
    match = DAY_NOTE_TITLE.match(str(document.get("title") or ""))
    return match.group(1) if match else None


@dataclass
class Reconciliation:
    added: int = 0
    updated: int = 0
    removed: int = 0


async def reconcile_task_blocks(
    store: CanonicalStore,
    *,
    event_id: str,
    integration_id: str,
    document_id: str,
    current: list[BlockData],
    now: datetime,
) -> Reconciliation:
    """Diff the stored task blocks of one document against the delivered ones."""
    outcome = Reconciliation()
    current_by_hash = {block.metadata["hash"]: block for block in current if block.metadata.get("hash")}
    seen: set[str] = set()

    existing: list[StoredBlock] = [
        block
        for block in await store.list_blocks(event_id)
        if block.block_type in TASK_BLOCK_TYPES and block.metadata.get("outline_document_id") == document_id
    ]
    for block in existing:
        block_hash = block.metadata.get("hash")
        if not block_hash or block_hash not in current_by_hash or block_hash in seen:
            await store.update_block(
                block.id,
                {
                    "metadata": {**block.metadata, "removed": True, "removed_at": isoformat_z(now)},
                    "deleted_at": now,
                },
            )
            outcome.removed += 1
            continue
        delivered = current_by_hash[block_hash]
        await store.update_block(
            block.id,
            {
                "block_type": delivered.block_type,
                "time": delivered.time,
                "title": delivered.title,
                "url": delivered.url,
                "metadata": {**block.metadata, "checked": delivered.metadata.get("checked", False)},
            },
        )
        seen.add(block_hash)
        outcome.updated += 1

    new_blocks = [block for block_hash, block in current_by_hash.items() if block_hash not in seen]
    if new_blocks:
        await store.add_blocks(event_id, integration_id, new_blocks)
        outcome.added = len(new_blocks)
    return outcome


def _header(headers: Mapping[str, str], name: str) -> str | None:
    lowered = name.lower()
    for key, value in headers.items():
        if key.lower() == lowered:
            return value
    return None


class OutlinePlugin(ProviderPlugin):
    identifier = "outline"
    display_name = "Outline"
    description = "Documents, day notes and the tasks inside them"
    domain = "knowledge"
    capabilities = frozenset({Capability.WEBHOOK})
    instance_types = {"documents": "Documents"}
    signature_header = "Outline-Signature"

    def configuration_schema(self) -> dict[str, ConfigField]:
        return {
            "api_url": ConfigField(type="string", label="API URL", default="https://app.getoutline.com"),
            "daynotes_collection_id": ConfigField(type="string", label="Day Notes Collection ID"),
        }

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def verify_webhook_signature(self, integration: Integration, body: bytes, headers: Mapping[str, str]) -> bool:
        header = _header(headers, self.signature_header or "")
        if not header or not integration.account_id:
            return False
        timestamp, signature = _parse_signature(header)
        if not timestamp or not signature:
            return False
        expected = signature_for(body, integration.account_id, timestamp)
        return hmac.compare_digest(expected, f"t={timestamp},s={signature}")

    def split_webhook(self, integration: Integration, payload: Any, headers: Mapping[str, str]) -> list[WebhookChunk]:
        if not isinstance(payload, dict):
            raise MalformedPayload(message="Outline delivery is not an object")
        event = str(payload.get("event") or "")
        model = (payload.get("payload") or {}).get("model")
        if not isinstance(model, dict):
            logger.info("Outline delivery without a model ignored", event=event)
            return []
        if event in DOCUMENT_EVENTS:
            return [WebhookChunk(data_type="document", items=[model])]
        if event in DELETE_EVENTS:
            return [WebhookChunk(data_type="document_deleted", items=[model])]
        if event.startswith("collections."):
            return [WebhookChunk(data_type="collection", items=[model])]
        logger.info("Outline delivery type ignored", event=event)
        return []

    # ------------------------------------------------------------------
    # Shaping
    # ------------------------------------------------------------------

    def _url(self, integration: Integration, path: Any) -> str | None:
        if not path:
            return None
        base = str(integration.configuration.get("api_url") or "https://app.getoutline.com").rstrip("/")
        return f"{base}{path}"

    def collection_object(self, integration: Integration, collection: dict[str, Any]) -> ObjectData:
        return ObjectData(
            concept="category",
            type="outline_collection",
            title=collection.get("name") or "Collection",
            content=collection.get("description"),
            metadata={"outline_collection_id": collection.get("id")},
            url=self._url(integration, collection.get("url")),
        )

    def convert_data(self, item: dict[str, Any], integration: Integration, data_type: str) -> ConvertedData:
        if data_type == "collection":
            return ConvertedData(objects=[self.collection_object(integration, item)])
        document_id = item.get("id")
        if not document_id:
            raise MalformedPayload(meta={"missing": "id"})

        day = day_note_date(item, integration.configuration.get("daynotes_collection_id"))
        time = f"{day}T00:00:00Z" if day else item.get("createdAt") or item.get("updatedAt")
        if not time:
            raise MalformedPayload(meta={"missing": "createdAt"})
        url = self._url(integration, item.get("url"))
        creator = item.get("createdBy") or {}
        block_type = "day_task" if day else "doc_task"

        return ConvertedData(
            events=[
                EventData(
                    source_id=f"outline_doc_{document_id}",
                    time=time,
                    service=self.identifier,
                    domain=self.domain,
                    action="had_day_note" if day else "created",
                    metadata={key: value for key, value in item.items() if key not in ("text", "createdBy")},
                    actor=ObjectData(
                        concept="b_party",
                        type="outline_user",
                        title=creator.get("name") or "Outline User",
                        metadata={"outline_user_id": creator.get("id")},
                        media_url=creator.get("avatarUrl"),
                    ),
                    target=ObjectData(
                        concept="day_note" if day else "document",
                        type="outline_document",
                        title=item.get("title") or "Document",
                        content=item.get("text"),
                        metadata={"outline_document_id": document_id, "collection_id": item.get("collectionId")},
                        url=url,
                    ),
                    blocks=[
                        BlockData(
                            block_type=block_type,
                            time=time,
                            title=task.text,
                            metadata={
                                "outline_document_id": document_id,
                                "line_number": task.line_number,
                                "checked": task.checked,
                                "hash": task.hash,
                            },
                            url=url,
                        )
                        for task in extract_tasks(document_id, item.get("text") or "")
                    ],
                )
            ]
        )

    async def process_items(
        self, ctx: PluginContext, integration: Integration, data_type: str, items: list[dict[str, Any]]
    ) -> IngestReport:
        report = IngestReport()
        for item in items:
            if data_type == "document_deleted":
                existing = await ctx.store.find_event(integration.id, f"outline_doc_{item.get('id')}")
                if existing is not None:
                    await ctx.store.soft_delete_event(existing.id)
                    report.written += 1
                continue
            try:
                converted = self.convert_data(item, integration, data_type)
            except ITEM_ERRORS as exc:
                report.skipped += 1
                report.errors.append(str(exc))
                logger.warning("Skipping malformed Outline item", integration_id=integration.id, error=str(exc))
                continue
            for obj in converted.objects:
                await ctx.store.upsert_object(integration.user_id, obj)
                report.objects += 1
            for event in converted.events:
                await self._write_document(ctx, integration, event, report)
        return report

    async def _write_document(
        self, ctx: PluginContext, integration: Integration, event: EventData, report: IngestReport
    ) -> None:
        now = ctx.clock()
        async with ctx.store.transaction() as store:
            result = await write_event(
                store,
                user_id=integration.user_id,
                integration_id=integration.id,
                event=event,
                now=now,
                sync_blocks=False,
            )
            outcome = await reconcile_task_blocks(
                store,
                event_id=result.event.id,
                integration_id=integration.id,
                document_id=str(event.target.metadata.get("outline_document_id")),
                current=event.blocks,
                now=now,
            )
        report.written += 1
        if result.change == "created":
            report.created += 1
        logger.info(
            "Outline tasks reconciled",
            integration_id=integration.id,
            event_id=result.event.id,
            added=outcome.added,
            updated=outcome.updated,
            removed=outcome.removed,
        )
