"""
Optimistic-concurrency transactions.

A ``Transaction`` caches every read and buffers every write. On commit it
turns each read into a versionstamp check and sends checks plus writes as a
single atomic operation, so the commit succeeds only if nothing it read has
changed since. ``run_transaction`` re-runs the whole function on conflict
with linear backoff.
"""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger

from .atomic import AtomicOperation
from .errors import KvStateError, ValidationError
from .keys import KeyPart, encode_key, validate_key
from .metrics import KV_TRANSACTION_ATTEMPTS_TOTAL
from .models import (
    Check,
    CommitOutcome,
    CommitResult,
    Entry,
    TransactionError,
    TransactionOutcome,
    TransactionResult,
)
from .utils import Duration, linear_backoff_ms, parse_duration_ms

KeyLike = Sequence[KeyPart]


class Transaction:
    """One attempt of a transaction: snapshot reads plus buffered writes."""

    def __init__(self, gateway) -> None:
        self._gateway = gateway
        self._reads: Dict[bytes, Entry] = {}
        self._op = AtomicOperation(gateway)

    @property
    def read_count(self) -> int:
        return len(self._reads)

    @property
    def write_count(self) -> int:
        return self._op.mutation_count

    @property
    def committed(self) -> bool:
        return self._op.committed

    async def get(self, key: KeyLike) -> Entry:
        self._ensure_open()
        key = validate_key(key)
        ek = encode_key(key)
        cached = self._reads.get(ek)
        if cached is not None:
            return cached
        entry = await self._gateway.get(key)
        # A concurrent get of the same key may have landed first; keep that one.
        return self._reads.setdefault(ek, entry)

    async def get_many(self, keys: Iterable[KeyLike]) -> List[Entry]:
        self._ensure_open()
        keys = [validate_key(k) for k in keys]
        encoded = [encode_key(k) for k in keys]

        missing: Dict[bytes, tuple] = {}
        for ek, k in zip(encoded, keys):
            if ek not in self._reads and ek not in missing:
                missing[ek] = k
        if missing:
            fetched = await self._gateway.get_many(list(missing.values()))
            for ek, entry in zip(missing.keys(), fetched):
                self._reads.setdefault(ek, entry)
        return [self._reads[ek] for ek in encoded]

    def set(self, key: KeyLike, value: Any, expires_in: Optional[Duration] = None) -> "Transaction":
        self._ensure_open()
        self._op.set(key, value, expires_in)
        return self

    def delete(self, key: KeyLike) -> "Transaction":
        self._ensure_open()
        self._op.delete(key)
        return self

    def sum(self, key: KeyLike, n: int) -> "Transaction":
        self._ensure_open()
        self._op.sum(key, n)
        return self

    def max(self, key: KeyLike, n: int) -> "Transaction":
        self._ensure_open()
        self._op.max(key, n)
        return self

    def min(self, key: KeyLike, n: int) -> "Transaction":
        self._ensure_open()
        self._op.min(key, n)
        return self

    def append(self, key: KeyLike, values: Sequence[Any]) -> "Transaction":
        self._ensure_open()
        self._op.append(key, values)
        return self

    def prepend(self, key: KeyLike, values: Sequence[Any]) -> "Transaction":
        self._ensure_open()
        self._op.prepend(key, values)
        return self

    async def commit(self) -> CommitOutcome:
        """Check every key read at its observed versionstamp and apply the writes."""
        self._ensure_open()
        self._op.check(
            *(Check(key=e.key, versionstamp=e.versionstamp) for e in self._reads.values())
        )
        try:
            return await self._op.commit()
        finally:
            self._reads.clear()

    def _ensure_open(self) -> None:
        if self._op.committed:
            raise KvStateError("Transaction already committed")


TransactionFn = Callable[[Transaction], Awaitable[Any]]


async def run_transaction(
    gateway,
    fn: TransactionFn,
    *,
    max_retries: int = 0,
    retry_delay: Duration = 10,
) -> TransactionOutcome:
    """
    Run ``fn`` inside a transaction, retrying on conflict.

    Attempt ``n`` (1-based) that conflicts sleeps ``retry_delay * n`` ms before
    the next one; after ``max_retries + 1`` attempts a ``TransactionError`` is
    returned. Exceptions raised by ``fn`` propagate untouched and nothing is
    committed for that attempt.
    """
    if isinstance(max_retries, bool) or not isinstance(max_retries, int) or max_retries < 0:
        raise ValidationError(f"max_retries must be a non-negative int, got {max_retries!r}")
    try:
        delay_ms = parse_duration_ms(retry_delay)
    except ValueError as e:
        raise ValidationError(str(e)) from e

    attempts = max_retries + 1
    for attempt in range(1, attempts + 1):
        tx = Transaction(gateway)
        try:
            value = await fn(tx)
        except Exception:
            KV_TRANSACTION_ATTEMPTS_TOTAL.labels("error").inc()
            raise

        outcome = await tx.commit()
        if isinstance(outcome, CommitResult):
            KV_TRANSACTION_ATTEMPTS_TOTAL.labels("committed").inc()
            return TransactionResult(value=value, versionstamp=outcome.versionstamp)

        KV_TRANSACTION_ATTEMPTS_TOTAL.labels("conflict").inc()
        if attempt < attempts:
            backoff = linear_backoff_ms(delay_ms, attempt)
            logger.debug(
                f"Transaction conflict on attempt {attempt}/{attempts}; retrying in {backoff}ms"
            )
            await asyncio.sleep(backoff / 1000.0)

    logger.warning(f"Transaction gave up after {attempts} conflicting attempt(s)")
    return TransactionError(attempts=attempts)
