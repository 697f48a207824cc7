"""Final policy gate before any trade plan is produced.

Rules are independent; the result's severity and action are the most
severe of whatever fired.  A violation is reported, never raised.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path

import yaml
from loguru import logger

from .models import GuardAction, Severity, utc_now
from .settings import settings


@dataclass
class GuardrailPolicy:
    approved_sources: frozenset[str]
    min_quality_score: float
    price_floor: float
    price_ceiling: float
    max_data_age_seconds: float = 300
    kill_switch: bool = False

    def is_approved(self, source: str) -> bool:
        return source.strip().lower() in self.approved_sources


@dataclass(frozen=True)
class GuardrailOperation:
    sources: tuple[str, ...]
    price: float | None
    data_quality_score: float
    timestamp: datetime | None = None
    is_estimated: bool = False


@dataclass(frozen=True)
class GuardrailResult:
    passed: bool
    violations: tuple[str, ...]
    severity: Severity
    action: GuardAction


@dataclass
class _RuleHit:
    violations: list[str] = field(default_factory=list)
    severity: Severity = Severity.INFO
    action: GuardAction = GuardAction.PROCEED


def load_guardrail_policy(file_path: Path | None = None) -> GuardrailPolicy:
    file_path = file_path or settings.guardrail_policy_path
    if not file_path.exists():
        return GuardrailPolicy(
            approved_sources=settings.approved_sources(),
            min_quality_score=settings.min_quality_score,
            price_floor=settings.price_floor_usd,
            price_ceiling=settings.price_ceiling_usd,
        )

    raw = yaml.safe_load(file_path.read_text(encoding="utf-8")) or {}
    sources = raw.get("approved_sources")
    quality = raw.get("quality", {})
    price = raw.get("price_bounds", {})

    return GuardrailPolicy(
        approved_sources=(
            frozenset(str(s).strip().lower() for s in sources)
            if sources
            else settings.approved_sources()
        ),
        min_quality_score=float(quality.get("min_score", settings.min_quality_score)),
        max_data_age_seconds=float(quality.get("max_data_age_seconds", 300)),
        price_floor=float(price.get("floor_usd", settings.price_floor_usd)),
        price_ceiling=float(price.get("ceiling_usd", settings.price_ceiling_usd)),
        kill_switch=bool(raw.get("kill_switch", False)),
    )


class GuardrailEnforcer:
    def __init__(self, policy: GuardrailPolicy | None = None) -> None:
        self.policy = policy or load_guardrail_policy()

    def enforce(self, operation: GuardrailOperation, now: datetime | None = None) -> GuardrailResult:
        hits = [
            self._check_provenance(operation),
            self._check_quality(operation, now or utc_now()),
            self._check_price(operation),
        ]
        fired = [h for h in hits if h.violations]
        violations = tuple(v for h in fired for v in h.violations)
        severity = max((h.severity for h in fired), default=Severity.INFO)
        action = max((h.action for h in fired), default=GuardAction.PROCEED)

        for v in violations:
            logger.warning("Guardrail: {}", v)
        return GuardrailResult(
            passed=not violations,
            violations=violations,
            severity=severity,
            action=action,
        )

    # ── rules ─────────────────────────────────────────────────────

    def _check_provenance(self, op: GuardrailOperation) -> _RuleHit:
        hit = _RuleHit()
        if self.policy.kill_switch:
            hit.violations.append("KILL SWITCH: guardrail policy has suspended all operations")
        if not op.sources:
            hit.violations.append("ZERO-HALLUCINATION VIOLATION: No data sources provided")
        for source in op.sources:
            if not self.policy.is_approved(source):
                hit.violations.append(f"ZERO-HALLUCINATION VIOLATION: Unapproved source detected: {source}")
        if op.is_estimated:
            hit.violations.append("ZERO-HALLUCINATION VIOLATION: Estimated data presented as real")
        if hit.violations:
            hit.severity, hit.action = Severity.FATAL, GuardAction.SUSPEND
        return hit

    def _check_quality(self, op: GuardrailOperation, now: datetime) -> _RuleHit:
        hit = _RuleHit()
        if op.data_quality_score < self.policy.min_quality_score:
            hit.violations.append(
                f"DATA QUALITY VIOLATION: Quality score {op.data_quality_score:g}% "
                f"below minimum {self.policy.min_quality_score:g}%"
            )
        if op.timestamp is not None:
            age = (now - op.timestamp).total_seconds()
            if age > self.policy.max_data_age_seconds:
                hit.violations.append(f"DATA QUALITY VIOLATION: Data is stale ({age:.0f}s old)")
        if hit.violations:
            hit.severity, hit.action = Severity.ERROR, GuardAction.BLOCK
        return hit

    def _check_price(self, op: GuardrailOperation) -> _RuleHit:
        hit = _RuleHit()
        price = op.price
        if price is None or not price > 0:
            hit.violations.append(f"ANOMALY DETECTED: Invalid or placeholder price {price!r}")
        elif not self.policy.price_floor <= price <= self.policy.price_ceiling:
            hit.violations.append(
                f"ANOMALY DETECTED: Price {price:g} outside expected range "
                f"[{self.policy.price_floor:g}, {self.policy.price_ceiling:g}]"
            )
        if hit.violations:
            hit.severity, hit.action = Severity.ERROR, GuardAction.BLOCK
        return hit
