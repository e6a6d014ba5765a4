"""日权益全量重建 / 校验（管理命令）

python -m app.jobs.equity_rebuild_job [--user ID] [--validate]
"""
import argparse
import asyncio
import logging

from app.core.config import settings
from app.core.logging_config import setup_logging
from app.models import db
from app.models.db import init_models, session_factory
from app.services.daily_equity_service import (
    DailyEquityService,
    rebuild_all_daily_equity,
    validate_all_daily_equity,
)

logger = logging.getLogger(__name__)


async def run(user_id=None, validate: bool = False) -> list:
    await init_models()
    if user_id:
        async with session_factory()() as session:
            svc = DailyEquityService(session)
            result = await (svc.validate(user_id) if validate else svc.rebuild(user_id))
        return [result]
    if validate:
        return await validate_all_daily_equity()
    return await rebuild_all_daily_equity()


async def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Rebuild or validate daily equity series")
    parser.add_argument("--user", dest="user_id", help="only process this user id")
    parser.add_argument("--validate", action="store_true", help="compare stored rows against a fresh rebuild")
    args = parser.parse_args(argv)

    try:
        results = await run(args.user_id, args.validate)
    finally:
        await db.engine.dispose()

    failed = 0
    for r in results:
        if args.validate:
            if not r["ok"]:
                failed += 1
            print(
                f"[EquityValidate] user={r['user_id']} ok={r['ok']} "
                f"expected={r['expected_count']} stored={r['stored_count']} "
                f"discrepancies={len(r['discrepancies'])}"
            )
        else:
            print(f"[EquityRebuild] user={r['user_id']} days={r['days']} trades={r['trades']}")
    return 1 if failed else 0


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    raise SystemExit(asyncio.run(main()))
