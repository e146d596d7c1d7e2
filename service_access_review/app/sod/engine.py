"""
Segregation-of-Duties conflict engine.

Evaluation is a pure function of the target pair, the entitlements the
user holds, and an immutable policy snapshot. Callers decide the scope of
"held" (same application only, or every application) by what they pass in.
"""

import re
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Tuple
from urllib.parse import quote

from .models import PolicyViolation, SodPolicy


_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\-]")

HeldEntitlement = Tuple[str, str]


def normalize(value) -> str:
    """Canonical form used for every entitlement and application comparison."""
    collapsed = _WHITESPACE.sub("_", str(value if value is not None else "").strip())
    return _NON_WORD.sub("", collapsed).upper()


def normalize_pair(app_id, entitlement) -> HeldEntitlement:
    return normalize(app_id), normalize(entitlement)


@dataclass(frozen=True)
class _CompiledPolicy:
    policy: SodPolicy
    side1: HeldEntitlement
    side2: HeldEntitlement


@dataclass(frozen=True)
class PolicySnapshot:
    """Immutable, pre-normalized set of active policies for one evaluation pass."""

    policies: Tuple[_CompiledPolicy, ...]
    portal_url: str = ""

    @classmethod
    def from_policies(cls, policies: Iterable[SodPolicy], portal_url: str = "") -> "PolicySnapshot":
        compiled = []
        for policy in policies:
            if not policy.active:
                continue
            side1 = normalize_pair(policy.app_id1, policy.entitlement1)
            side2 = normalize_pair(policy.app_id2, policy.entitlement2)
            # Rows with a blank side can never be violated
            if not all(side1) or not all(side2) or side1 == side2:
                continue
            compiled.append(_CompiledPolicy(policy=policy, side1=side1, side2=side2))
        return cls(policies=tuple(compiled), portal_url=(portal_url or "").rstrip("/"))

    def __len__(self) -> int:
        return len(self.policies)

    def _link_for(self, policy: SodPolicy) -> Optional[str]:
        if policy.link:
            return policy.link
        if self.portal_url:
            return f"{self.portal_url}/policies/{quote(policy.id, safe='')}"
        return None

    def evaluate(
        self,
        target_app_id: str,
        target_entitlement: str,
        held: Iterable[HeldEntitlement],
    ) -> List[PolicyViolation]:
        """
        Return every policy the target pair participates in and the user
        violates, in policy order.

        A policy counts only when the user holds both of its sides and the
        target is one of those sides, so an unrelated entitlement held by
        a conflicted user is never reported.
        """
        target = normalize_pair(target_app_id, target_entitlement)
        held_set = normalized_held(held) | {target}

        violations: List[PolicyViolation] = []
        for compiled in self.policies:
            if target != compiled.side1 and target != compiled.side2:
                continue
            if compiled.side1 in held_set and compiled.side2 in held_set:
                policy = compiled.policy
                violations.append(PolicyViolation(
                    policy_id=policy.id,
                    policy_name=policy.name or policy.id,
                    severity=policy.severity,
                    link=self._link_for(policy),
                ))
        return violations


def normalized_held(held: Iterable[HeldEntitlement]) -> FrozenSet[HeldEntitlement]:
    return frozenset(normalize_pair(app_id, entitlement) for app_id, entitlement in held)


def evaluate(
    target_app_id: str,
    target_entitlement: str,
    held: Iterable[HeldEntitlement],
    policies: Iterable[SodPolicy],
    portal_url: str = "",
) -> List[PolicyViolation]:
    """One-shot evaluation against a list of policies."""
    return PolicySnapshot.from_policies(policies, portal_url).evaluate(target_app_id, target_entitlement, held)
