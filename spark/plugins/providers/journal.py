"""Journal (manual). User-entered entries, no external API and no Fetch job."""

from __future__ import annotations

from typing import Any

import structlog

from spark.canonical.records import BlockData, ConvertedData, EventData, ObjectData
from spark.canonical.store import CanonicalStore
from spark.canonical.writer import IngestReport, write_converted
from spark.integrations.config_schema import ConfigField
from spark.integrations.models import Integration
from spark.kernel.errors import ValidationError
from spark.kernel.hashing import payload_fingerprint
from spark.plugins.contracts import Capability, ProviderPlugin

logger = structlog.get_logger()

MOOD_RANGE = (1, 10)


class JournalPlugin(ProviderPlugin):
    identifier = "journal"
    display_name = "Journal"
    description = "Entries you write yourself"
    domain = "knowledge"
    capabilities = frozenset({Capability.MANUAL})
    instance_types = {"entries": "Journal Entries"}

    def configuration_schema(self) -> dict[str, ConfigField]:
        return {
            "track_mood": ConfigField(type="boolean", label="Ask for a mood score", default=True),
        }

    def shape_entry(self, integration: Integration, entry: dict[str, Any]) -> ConvertedData:
        """Map one submitted entry onto an event with the body and tags as blocks."""
        body = str(entry.get("body") or "").strip()
        written_at = entry.get("time") or entry.get("date")
        if not body or not written_at:
            raise ValidationError(
                message="A journal entry needs a body and a time",
                meta={"missing": [name for name, value in (("body", body), ("time", written_at)) if not value]},
            )
        mood = entry.get("mood")
        if mood is not None:
            mood = int(mood)
            if not MOOD_RANGE[0] <= mood <= MOOD_RANGE[1]:
                raise ValidationError(message="Mood must be between 1 and 10", meta={"mood": mood})

        entry_id = entry.get("id") or payload_fingerprint([integration.id, str(written_at), body])[:24]
        title = str(entry.get("title") or body.splitlines()[0][:80])
        tags = [str(tag).strip() for tag in entry.get("tags") or [] if str(tag).strip()]

        blocks = [BlockData(block_type="entry_body", title="Entry", content=body, time=written_at)]
        blocks.extend(
            BlockData(block_type="tag", title=tag, metadata={"tag": tag}, time=written_at) for tag in tags
        )
        return ConvertedData(
            events=[
                EventData(
                    source_id=f"journal_{integration.id}_{entry_id}",
                    time=written_at,
                    service=self.identifier,
                    domain=self.domain,
                    action="wrote_entry",
                    value=mood if integration.configuration.get("track_mood", True) else None,
                    value_unit="mood" if mood is not None else None,
                    metadata={"tags": tags, "word_count": len(body.split())},
                    actor=ObjectData(concept="user", type="journal_author", title=integration.name or "Me"),
                    target=ObjectData(concept="document", type="journal_entry", title=title, content=body),
                    blocks=blocks,
                )
            ]
        )

    async def record_entry(self, store: CanonicalStore, integration: Integration, entry: dict[str, Any]) -> IngestReport:
        converted = self.shape_entry(integration, entry)
        async with store.transaction() as tx:
            report = await write_converted(
                tx, user_id=integration.user_id, integration_id=integration.id, converted=converted
            )
        logger.info("Journal entry recorded", integration_id=integration.id, created=report.created)
        return report
