from __future__ import annotations
import asyncio, logging, time
from typing import Optional
from aiokafka import AIOKafkaConsumer
import orjson
from pydantic import ValidationError

from rollups.config import Settings
from rollups.errors import InvalidTenantError, StoreError
from rollups.schemas import IngestMessage
from rollups.service import RollupService

logger = logging.getLogger(__name__)

class RollupRunner:
    """Consumes ``{"application_id": ..., "event": {...}}`` messages and logs
    each event through the service. Offsets are committed every
    ``commit_every`` messages or ``flush_interval_seconds``, whichever comes
    first; a crash between commits replays (and double counts) those events."""

    def __init__(self, settings: Settings, service: RollupService, flush_interval_seconds: float = 2.0):
        self.s = settings
        self.service = service
        self.flush_interval_seconds = flush_interval_seconds

        self._consumer: Optional[AIOKafkaConsumer] = None
        self._last_commit = time.time()
        self._pending = 0
        self.processed = 0
        self.skipped = 0

    async def start(self):
        self._consumer = AIOKafkaConsumer(
            self.s.topic,
            bootstrap_servers=self.s.kafka_bootstrap,
            group_id=self.s.group,
            enable_auto_commit=False,
            auto_offset_reset="earliest",
            max_poll_records=2000,
        )
        await self._consumer.start()
        logger.info("consuming topic=%s group=%s", self.s.topic, self.s.group)

    async def stop(self):
        if self._consumer:
            if self._pending:
                await self.commit()
            await self._consumer.stop()
            self._consumer = None

    async def run_forever(self):
        assert self._consumer is not None
        try:
            async for msg in self._consumer:
                await self.handle_message(msg.value)
                self._pending += 1
                if self._pending >= self.s.commit_every or (time.time() - self._last_commit) >= self.flush_interval_seconds:
                    await self.commit()
        finally:
            await self.stop()

    async def handle_message(self, raw: bytes) -> bool:
        try:
            msg = IngestMessage.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as e:
            self.skipped += 1
            logger.warning("dropping malformed message: %s", e)
            return False

        try:
            result = await asyncio.to_thread(self.service.log_event, msg.application_id, msg.event)
        except InvalidTenantError as e:
            self.skipped += 1
            logger.warning("dropping event: %s", e)
            return False
        except StoreError as e:
            self.skipped += 1
            logger.error("error logging event tenant=%s: %s", msg.application_id, e)
            return False
        except Exception:
            self.skipped += 1
            logger.exception("unexpected error logging event tenant=%s, skipping", msg.application_id)
            return False

        self.processed += 1
        failed = [m for m in result.merges if not m.ok]
        if failed:
            logger.warning("event tenant=%s partially aggregated failed=%d of %d",
                           msg.application_id, len(failed), len(result.merges))
        return True

    async def commit(self):
        assert self._consumer is not None
        await self._consumer.commit()
        self._last_commit = time.time()
        self._pending = 0
