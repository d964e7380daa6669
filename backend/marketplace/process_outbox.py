"""
手动处理 outbox 事件

不经过 Redis 队列，在当前进程内直接处理已到期的 pending 事件。
用于排查问题或在没有 worker 的环境中补偿。

运行方式：
    python -m marketplace.process_outbox --limit 100
"""
import argparse
import logging
from collections import Counter

from sqlmodel import Session

from marketplace.core.db import engine
from marketplace.outbox import OutboxDispatcher
from marketplace.services.firestore_service import get_firestore_service

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Process pending outbox events")
    parser.add_argument("--limit", type=int, default=100)
    args = parser.parse_args(argv)

    store = get_firestore_service()
    try:
        with Session(engine) as session:
            dispatcher = OutboxDispatcher(session=session, store=store)
            results = dispatcher.run_pending(limit=args.limit)
    finally:
        store.close()

    if not results:
        logger.info("No pending outbox events.")
        return 0

    summary = Counter(status.value if status else "skipped" for status in results.values())
    logger.info("Processed %d outbox events: %s", len(results), dict(summary))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
