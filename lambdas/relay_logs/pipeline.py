# lambdas/relay_logs/pipeline.py
import json
import logging
from typing import Callable, Iterable, Iterator, List, Optional

from .models import Batch, ForwardOutcome, PipelineResult, Record
from .record_rules import RecordTransformer

logger = logging.getLogger(__name__)

ForwardBatch = Callable[[Batch], List[ForwardOutcome]]


class RecordPipeline:
    """
    Turns a decompressed JSONL line stream into ordered, bounded batches and
    hands each sealed batch to the forwarder before building the next one.
    """

    def __init__(
        self,
        transformer: RecordTransformer,
        max_batch_records: int = 4000,
        max_batch_bytes: Optional[int] = None,
    ):
        if max_batch_records < 1:
            raise ValueError("max_batch_records must be at least 1.")
        self.transformer = transformer
        self.max_batch_records = max_batch_records
        self.max_batch_bytes = max_batch_bytes

    def parse_line(self, raw_line: str) -> Optional[dict]:
        """Returns the JSON object on the line, or None when the line is not one."""
        try:
            obj = json.loads(raw_line)
        except json.JSONDecodeError:
            return None
        return obj if isinstance(obj, dict) else None

    def iter_batches(self, lines: Iterable[str], result: Optional[PipelineResult] = None) -> Iterator[Batch]:
        """
        Yields sealed batches in source order.
        Counters for lines, bytes, parse failures and filtered records go into result.
        """
        result = result if result is not None else PipelineResult()
        current: List[Record] = []
        current_size = 0
        index = 0

        for line_number, raw_line in enumerate(lines, start=1):
            result.lines_read += 1
            result.bytes_read += len(raw_line.encode("utf-8"))

            if not raw_line.strip():
                continue

            obj = self.parse_line(raw_line)
            if obj is None:
                result.parse_failures += 1
                logger.warning(f"⚠️ Skipping malformed line {line_number}: not a JSON object.")
                continue

            if not self.transformer.accepts(obj):
                result.filtered_records += 1
                continue

            record = self.transformer.transform(obj)

            if current and self._would_overflow(len(current), current_size, record):
                yield Batch(index=index, records=tuple(current))
                index += 1
                current, current_size = [], 0

            current.append(record)
            current_size += record.size

        if current:
            yield Batch(index=index, records=tuple(current))

    def _would_overflow(self, count: int, size: int, record: Record) -> bool:
        if count + 1 > self.max_batch_records:
            return True
        return self.max_batch_bytes is not None and size + record.size > self.max_batch_bytes

    def run(self, lines: Iterable[str], forward: ForwardBatch) -> PipelineResult:
        """
        Forwards every batch in order. A failed forward is recorded and the
        next batch is still attempted.
        """
        result = PipelineResult()

        for batch in self.iter_batches(lines, result):
            result.batches += 1
            result.records_ingested += len(batch)
            result.ingest_bytes += batch.size
            logger.info(f"Forwarding batch #{batch.index + 1} ({len(batch)} records, {batch.size} bytes)...")

            outcomes = forward(batch)
            result.outcomes.extend(outcomes)
            for outcome in outcomes:
                if not outcome.success:
                    logger.error(
                        f"❌ Batch #{batch.index + 1} was not accepted by '{outcome.endpoint}' "
                        f"(status: {outcome.http_status}): {outcome.error}"
                    )

        logger.info(
            f"✅ Pipeline finished: read {result.lines_read} line(s) ({result.bytes_read} bytes), "
            f"{result.records_ingested} records in {result.batches} batch(es), "
            f"{result.parse_failures} malformed line(s), {result.filtered_records} filtered record(s), "
            f"{result.failed_batches} failed batch(es)."
        )
        return result
