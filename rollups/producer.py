from __future__ import annotations
import asyncio, random, time
from typing import Any, Dict
from aiokafka import AIOKafkaProducer
import orjson

COUNTRIES = {
    "US": ["NYC", "SF", "Austin"],
    "NG": ["Lagos", "Abuja"],
    "GB": ["London", "Leeds"],
}
DEVICES = ["ios", "android", "web"]
ACTIONS = ["view", "click", "purchase"]

def _rand_choice(seq):
    return seq[random.randint(0, len(seq)-1)]

def synthetic_event(hot_key_prob: float = 0.10) -> Dict[str, Any]:
    if random.random() < hot_key_prob:
        country, city = "US", "NYC"
    else:
        country = _rand_choice(list(COUNTRIES))
        city = _rand_choice(COUNTRIES[country])
    return {
        "attributes": [
            {"key": "Country", "value": country},
            {"key": "City", "value": city},
            {"key": "device", "value": _rand_choice(DEVICES)},
            {"key": "action", "value": _rand_choice(ACTIONS)},
        ],
        "timestamp": int(time.time()),
    }

async def produce_events(bootstrap: str, topic: str, application_id: str, rate_per_sec: int, seconds: int,
                         hot_key_prob: float = 0.10):
    producer = AIOKafkaProducer(bootstrap_servers=bootstrap)
    await producer.start()
    try:
        total = rate_per_sec * seconds
        interval = 1.0 / max(1, rate_per_sec)

        for _ in range(total):
            msg = {"application_id": application_id, "event": synthetic_event(hot_key_prob)}
            await producer.send_and_wait(topic, orjson.dumps(msg), key=application_id.encode("utf-8"))
            await asyncio.sleep(interval)
    finally:
        await producer.stop()
