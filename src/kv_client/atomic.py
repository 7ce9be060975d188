"""
Atomic multi-key mutation builder.

Accumulates checks and mutations locally; ``commit()`` sends them in a single
request. Either every check passes and every mutation is applied, or nothing
is applied.
"""

from __future__ import annotations

from typing import Any, List, Optional, Sequence, Union

from loguru import logger

from .encoding import BigInt
from .errors import KvStateError, ValidationError
from .keys import KeyPart, validate_key
from .metrics import KV_COMMITS_TOTAL
from .models import Check, CommitOutcome, CommitResult, Mutation, MutationType
from .utils import Duration, parse_duration_ms

KeyLike = Sequence[KeyPart]
CheckLike = Union[Check, dict]


class AtomicOperation:
    """Chainable builder for one atomic commit.

    Example:
        result = await (
            kv.atomic()
            .check(Check(key=("balance", "a"), versionstamp=vs))
            .sum(("balance", "a"), -10)
            .sum(("balance", "b"), 10)
            .commit()
        )
    """

    def __init__(self, gateway) -> None:
        self._gateway = gateway
        self._checks: List[Check] = []
        self._mutations: List[Mutation] = []
        self._committed = False

    @property
    def check_count(self) -> int:
        return len(self._checks)

    @property
    def mutation_count(self) -> int:
        return len(self._mutations)

    @property
    def committed(self) -> bool:
        return self._committed

    def check(self, *checks: CheckLike) -> "AtomicOperation":
        self._ensure_open()
        for c in checks:
            self._checks.append(c if isinstance(c, Check) else Check.model_validate(c))
        return self

    def set(self, key: KeyLike, value: Any, expires_in: Optional[Duration] = None) -> "AtomicOperation":
        ttl = parse_duration_ms(expires_in) if expires_in is not None else None
        return self._add("set", key, value, expires_in=ttl)

    def delete(self, key: KeyLike) -> "AtomicOperation":
        return self._add("delete", key)

    def sum(self, key: KeyLike, n: int) -> "AtomicOperation":
        return self._add("sum", key, _bigint_operand("sum", n))

    def max(self, key: KeyLike, n: int) -> "AtomicOperation":
        return self._add("max", key, _bigint_operand("max", n))

    def min(self, key: KeyLike, n: int) -> "AtomicOperation":
        return self._add("min", key, _bigint_operand("min", n))

    def append(self, key: KeyLike, values: Sequence[Any]) -> "AtomicOperation":
        return self._add("append", key, _list_operand("append", values))

    def prepend(self, key: KeyLike, values: Sequence[Any]) -> "AtomicOperation":
        return self._add("prepend", key, _list_operand("prepend", values))

    async def commit(self) -> CommitOutcome:
        """Send all checks and mutations in one round trip."""
        self._ensure_open()
        self._committed = True
        outcome = await self._gateway.commit(self._checks, self._mutations)
        if isinstance(outcome, CommitResult):
            KV_COMMITS_TOTAL.labels("ok").inc()
        else:
            KV_COMMITS_TOTAL.labels("conflict").inc()
            logger.debug(
                f"Atomic commit rejected ({len(self._checks)} checks, "
                f"{len(self._mutations)} mutations)"
            )
        return outcome

    # ---------- internals ----------

    def _add(
        self,
        type_: MutationType,
        key: KeyLike,
        value: Any = None,
        *,
        expires_in: Optional[int] = None,
    ) -> "AtomicOperation":
        self._ensure_open()
        self._mutations.append(
            Mutation(
                type=type_,
                key=validate_key(key, allow_versionstamp=True),
                value=value,
                expires_in=expires_in,
            )
        )
        return self

    def _ensure_open(self) -> None:
        if self._committed:
            raise KvStateError("Atomic operation already committed")


def _bigint_operand(op: str, n: Any) -> BigInt:
    if isinstance(n, BigInt):
        return n
    if isinstance(n, bool) or not isinstance(n, int):
        raise ValidationError(f"{op} requires an int operand, got {type(n).__name__}")
    return BigInt(n)


def _list_operand(op: str, values: Any) -> list:
    if not isinstance(values, (list, tuple)):
        raise ValidationError(f"{op} requires a list operand, got {type(values).__name__}")
    return list(values)
