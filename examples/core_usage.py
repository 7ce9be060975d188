"""
Example usage of the KeyVal client.

Runs against a live KeyVal server; set KV_BASE_URL or edit BASE_URL below.
"""

import asyncio
import os

from kv_client import Kv, TransactionResult

BASE_URL = os.environ.get("KV_BASE_URL", "http://localhost:8000/api/keyval")


async def keys_example(kv: Kv):
    print("=== Keys ===")
    await kv.set(["users", 1], {"name": "Ada", "visits": 0})
    await kv.set(["sessions", "abc"], {"user": 1}, expires_in="30m")

    entry = await kv.get(["users", 1])
    print(f"users/1 -> {entry.value} @ {entry.versionstamp}")

    async for e in kv.list(["users"], limit=10):
        print(f"  {e.key} = {e.value}")
    print(f"count(users) = {await kv.count(['users'])}")


async def atomic_example(kv: Kv):
    print("=== Atomic ===")
    res = await kv.atomic().sum(["stats", "visits"], 1).append(["log"], ["visit"]).commit()
    print(f"commit ok={res.ok}")


async def transaction_example(kv: Kv):
    print("=== Transaction ===")

    async def rename(tx):
        user = await tx.get(["users", 1])
        tx.set(["users", 1], {**user.value, "name": "Ada Lovelace"})
        return user.value["name"]

    result = await kv.transaction(rename, max_retries=3, retry_delay=20)
    if isinstance(result, TransactionResult):
        print(f"renamed from {result.value!r}")
    else:
        print(f"gave up after {result.attempts} attempts")


async def watch_and_queue_example(kv: Kv):
    print("=== Watch + Queue ===")

    def on_change(entries):
        for e in entries:
            print(f"  changed: {e.key} -> {e.value}")

    async def on_message(value):
        print(f"  job: {value}")

    with kv.watch([["users"]], on_change, buffer_size=100), kv.listen_queue(on_message):
        await kv.set(["users", 2], {"name": "Grace"})
        await kv.enqueue({"task": "welcome", "user": 2}, backoff_schedule=["1s", "5s"])
        await asyncio.sleep(2)

    stats = await kv.queue_stats()
    print(f"queue: pending={stats.pending} dlq={stats.dlq}")


async def main():
    async with Kv({"base_url": BASE_URL}) as kv:
        await keys_example(kv)
        await atomic_example(kv)
        await transaction_example(kv)
        await watch_and_queue_example(kv)


if __name__ == "__main__":
    asyncio.run(main())
