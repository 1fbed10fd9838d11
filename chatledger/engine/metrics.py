from collections import defaultdict

from loguru import logger
from tinydb import TinyDB

from chatledger.models.schemas import ParsingMetric


class MetricsRecorder:
    """Persists one ParsingMetric per inbound message."""

    def __init__(self, db: TinyDB):
        self.table = db.table("parsing_metrics")

    def record(self, metric: ParsingMetric) -> None:
        logger.info(
            "metric user={} strategy={} action={} success={} latency={}ms{}",
            metric.user_id,
            metric.strategy_used.value,
            metric.intent_action,
            metric.success,
            metric.latency_ms,
            f" error={metric.error_message}" if metric.error_message else "",
        )
        try:
            self.table.insert(metric.model_dump(mode="json"))
        except Exception as e:
            logger.error("Failed to record parsing metric: {}", e)

    def all(self) -> list[ParsingMetric]:
        return [ParsingMetric(**doc) for doc in self.table.all()]

    def strategy_stats(self) -> list[dict]:
        grouped: dict[str, list[dict]] = defaultdict(list)
        for doc in self.table.all():
            grouped[doc["strategy_used"]].append(doc)

        stats = []
        for strategy, docs in sorted(grouped.items()):
            successes = sum(1 for d in docs if d["success"])
            stats.append({
                "strategy": strategy,
                "total_count": len(docs),
                "success_count": successes,
                "failure_count": len(docs) - successes,
                "success_rate": successes / len(docs),
                "avg_latency_ms": sum(d["latency_ms"] for d in docs) / len(docs),
            })
        return stats
