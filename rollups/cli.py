from __future__ import annotations
import argparse, asyncio, logging, time
import orjson
import uvicorn
from rollups.config import settings, Settings
from rollups.errors import RollupError
from rollups.producer import produce_events
from rollups.runner import RollupRunner
from rollups.schemas import Event, KeyPair
from rollups.service import build_service

logger = logging.getLogger("rollups")

def _settings_from(args) -> Settings:
    return settings.model_copy(update={
        k: v for k, v in {
            "store": getattr(args, "store", None),
            "database_url": getattr(args, "database_url", None),
            "redis_url": getattr(args, "redis_url", None),
            "tenants_path": getattr(args, "tenants_path", None),
            "kafka_bootstrap": getattr(args, "kafka_bootstrap", None),
            "topic": getattr(args, "topic", None),
            "group": getattr(args, "group", None),
        }.items() if v is not None
    })

def cmd_run(args):
    s = _settings_from(args)

    async def _main():
        service = build_service(s)
        runner = RollupRunner(s, service, flush_interval_seconds=args.flush_interval_seconds)
        try:
            await runner.start()
            await runner.run_forever()
        finally:
            service.close()

    asyncio.run(_main())

def cmd_produce(args):
    asyncio.run(produce_events(
        bootstrap=args.kafka_bootstrap,
        topic=args.topic,
        application_id=args.application_id,
        rate_per_sec=args.rate,
        seconds=args.seconds,
        hot_key_prob=args.hot_key_prob,
    ))

def cmd_api(args):
    uvicorn.run("rollups.api:app", host="0.0.0.0", port=args.port, reload=False)

def _parse_attr(raw: str) -> KeyPair:
    key, sep, value = raw.partition("=")
    if not sep:
        raise argparse.ArgumentTypeError(f"expected key=value, got {raw!r}")
    return KeyPair(key=key, value=value)

def cmd_dispatch(args):
    service = build_service(_settings_from(args))
    event = Event(attributes=args.attr, timestamp=args.timestamp if args.timestamp is not None else int(time.time()))
    try:
        result = service.log_event(args.application_id, event)
    except RollupError as e:
        logger.error("%s", e)
        raise SystemExit(1)
    finally:
        service.close()
    print(orjson.dumps(result.model_dump(mode="json"), option=orjson.OPT_INDENT_2).decode("utf-8"))
    if not all(m.ok for m in result.merges):
        raise SystemExit(2)

def main():
    p = argparse.ArgumentParser(prog="rollups")
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="cmd", required=True)

    r = sub.add_parser("run")
    r.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    r.add_argument("--topic", default=settings.topic)
    r.add_argument("--group", default=settings.group)
    r.add_argument("--flush-interval-seconds", type=float, default=2.0)
    r.add_argument("--store", choices=["memory", "sql", "redis"], default=settings.store)
    r.add_argument("--database-url", default=settings.database_url)
    r.add_argument("--redis-url", default=settings.redis_url)
    r.add_argument("--tenants-path", default=settings.tenants_path)
    r.set_defaults(fn=cmd_run)

    pr = sub.add_parser("produce")
    pr.add_argument("--kafka-bootstrap", default=settings.kafka_bootstrap)
    pr.add_argument("--topic", default=settings.topic)
    pr.add_argument("--application-id", required=True)
    pr.add_argument("--rate", type=int, default=200)
    pr.add_argument("--seconds", type=int, default=30)
    pr.add_argument("--hot-key-prob", type=float, default=0.2)
    pr.set_defaults(fn=cmd_produce)

    a = sub.add_parser("api")
    a.add_argument("--port", type=int, default=8000)
    a.set_defaults(fn=cmd_api)

    d = sub.add_parser("dispatch", help="aggregate one event against the configured store")
    d.add_argument("--application-id", required=True)
    d.add_argument("--timestamp", type=int)
    d.add_argument("--attr", type=_parse_attr, action="append", default=[], help="key=value, repeatable")
    d.add_argument("--store", choices=["memory", "sql", "redis"], default=settings.store)
    d.add_argument("--database-url", default=settings.database_url)
    d.add_argument("--redis-url", default=settings.redis_url)
    d.add_argument("--tenants-path", default=settings.tenants_path)
    d.set_defaults(fn=cmd_dispatch)

    args = p.parse_args()
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args.fn(args)

if __name__ == "__main__":
    main()
