"""Admission limits applied to simulation payloads before they are stored.

Checks run in a fixed order and stop at the first violation, so a rejection
always carries exactly one reason.
"""

from __future__ import annotations

import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

TRAJECTORY_FLAG_LETTER = "M"
TRAJECTORY_FLAG_BIT = 2


class ValidationError(ValueError):
    pass


@dataclass(slots=True, frozen=True)
class QuotaLimits:
    max_photons: float = 1e7
    max_time_gates: float = 20
    max_domain_dim: int = 100
    max_shape_size: int = 100
    max_scattering: float = 20


@dataclass(slots=True, frozen=True)
class QuotaResult:
    reason: str | None = None

    @property
    def accepted(self) -> bool:
        return self.reason is None

    def raise_for_rejection(self) -> None:
        if self.reason is not None:
            raise ValidationError(self.reason)


def _section(payload: dict[str, Any], key: str) -> dict[str, Any]:
    value = payload.get(key)
    return value if isinstance(value, dict) else {}


def _number(value: Any) -> float | None:
    """Coerce a payload field to float. Integers too large for a float become ``inf``."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return float(value)
        except OverflowError:
            return math.inf
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _exceeds(value: float, limit: float) -> bool:
    return not math.isfinite(value) or value > limit


def _components(value: Any) -> list[float]:
    if not isinstance(value, list):
        return []
    output: list[float] = []
    for item in value:
        number = _number(item)
        if number is not None:
            output.append(number)
    return output


def _check_photons(payload: dict[str, Any], limits: QuotaLimits) -> str | None:
    photons = _number(_section(payload, "Session").get("Photons"))
    if photons is not None and _exceeds(photons, limits.max_photons):
        return f"photon number exceeds limit ({photons:.0f} > {limits.max_photons:.0f})"
    return None


def _trajectory_bits(flag: Any) -> int | None:
    if isinstance(flag, bool):
        return None
    if isinstance(flag, int):
        return flag
    if isinstance(flag, float) and flag.is_integer():
        return int(flag)
    return None


def _check_debug_flag(payload: dict[str, Any], limits: QuotaLimits) -> str | None:
    flag = _section(payload, "Session").get("DebugFlag")
    if isinstance(flag, str) and TRAJECTORY_FLAG_LETTER in flag.upper():
        return "saving photon trajectories is not allowed"
    bits = _trajectory_bits(flag)
    if bits is not None and bits & TRAJECTORY_FLAG_BIT:
        return "saving photon trajectories is not allowed"
    return None


def _check_time_gates(payload: dict[str, Any], limits: QuotaLimits) -> str | None:
    forward = _section(payload, "Forward")
    t_end = _number(forward.get("T1"))
    step = _number(forward.get("Dt"))
    if t_end is None or step is None:
        return None
    t_start = _number(forward.get("T0"))
    if t_start is None:
        t_start = 0.0
    if not all(math.isfinite(value) for value in (t_start, t_end, step)):
        return "time settings must be finite numbers"
    if step <= 0:
        return "time step must be positive"
    gates = (t_end - t_start) / step
    if _exceeds(gates, limits.max_time_gates):
        return f"too many time gates ({gates:g} > {limits.max_time_gates:g})"
    return None


def _check_domain_dim(payload: dict[str, Any], limits: QuotaLimits) -> str | None:
    dims = _components(_section(payload, "Domain").get("Dim"))
    if len(dims) == 3 and any(_exceeds(dim, limits.max_domain_dim) for dim in dims):
        return f"domain dimension exceeds limit ({limits.max_domain_dim} per axis)"
    return None


def _iter_shape_bodies(shapes: Any) -> Iterator[dict[str, Any]]:
    items = shapes if isinstance(shapes, list) else [shapes]
    for item in items:
        if not isinstance(item, dict):
            continue
        for body in item.values():
            if isinstance(body, dict):
                yield body


def _check_shape_sizes(payload: dict[str, Any], limits: QuotaLimits) -> str | None:
    for body in _iter_shape_bodies(payload.get("Shapes")):
        if "Size" not in body:
            continue
        if any(_exceeds(size, limits.max_shape_size) for size in _components(body["Size"])):
            return f"shape grid size exceeds limit ({limits.max_shape_size} per axis)"
    return None


def _medium_scattering(medium: Any) -> float | None:
    if isinstance(medium, dict):
        return _number(medium.get("mus"))
    if isinstance(medium, list) and len(medium) > 1:
        return _number(medium[1])
    return None


def _check_scattering(payload: dict[str, Any], limits: QuotaLimits) -> str | None:
    media = _section(payload, "Domain").get("Media")
    if not isinstance(media, list):
        return None
    for medium in media:
        mus = _medium_scattering(medium)
        if mus is not None and _exceeds(mus, limits.max_scattering):
            return f"scattering coefficient exceeds limit ({mus:g} > {limits.max_scattering:g}/mm)"
    return None


CHECKS: tuple[Callable[[dict[str, Any], QuotaLimits], str | None], ...] = (
    _check_photons,
    _check_debug_flag,
    _check_time_gates,
    _check_domain_dim,
    _check_shape_sizes,
    _check_scattering,
)


def validate(payload: Any, limits: QuotaLimits | None = None) -> QuotaResult:
    limits = limits or QuotaLimits()
    if not isinstance(payload, dict):
        return QuotaResult("payload must be a JSON object")
    for check in CHECKS:
        reason = check(payload, limits)
        if reason is not None:
            return QuotaResult(reason)
    return QuotaResult()
