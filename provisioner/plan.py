"""
Desired-state resolution and the reconciliation diff.

Everything here is pure: no clients, no I/O.  The controller feeds recorded
state and desired units in and acts on the returned ``Plan``.
"""

from __future__ import annotations

from typing import Iterable, Mapping

from provisioner.models import OUTCOME_CONNECTED, Plan, PublisherUnit, UnitRecord


def display_name_for(base_name: str, ordinal: int) -> str:
    """First unit keeps the base name; later ones get a 1-based suffix."""
    if ordinal == 0:
        return base_name
    return f"{base_name}-{ordinal + 1}"


def placement_index(ordinal: int, segment_count: int) -> int:
    """Round-robin a unit across *segment_count* network segments."""
    if segment_count <= 0:
        raise ValueError("segment_count must be positive")
    return ordinal % segment_count


def resolve_units(
    keys: Iterable[str],
    base_name: str,
    current: Mapping[str, UnitRecord],
    name_overrides: Mapping[str, str] | None = None,
) -> dict[str, PublisherUnit]:
    """Turn desired keys into units, keeping identity stable across runs.

    Keys already recorded keep their ordinal (and therefore their placement).
    New keys continue the creation order after the highest recorded ordinal,
    so adding or removing one key never renumbers another.
    Names always follow the current base name, so renaming it plans a
    replacement of every unit without a name override.
    """
    name_overrides = name_overrides or {}
    next_ordinal = max((rec.ordinal for rec in current.values()), default=-1) + 1

    units: dict[str, PublisherUnit] = {}
    for key in keys:
        if key in units:
            raise ValueError(f"duplicate publisher key: {key}")
        rec = current.get(key)
        if rec is not None:
            ordinal = rec.ordinal
        else:
            ordinal = next_ordinal
            next_ordinal += 1
        units[key] = PublisherUnit(
            key=key,
            display_name=name_overrides.get(key) or display_name_for(base_name, ordinal),
            ordinal=ordinal,
        )
    return units


def diff(
    current: Mapping[str, UnitRecord],
    desired: Mapping[str, PublisherUnit],
    replace: Iterable[str] = (),
) -> Plan:
    """Compare recorded units against desired units.

    * desired, not recorded           -> create
    * recorded, not desired           -> destroy
    * recorded under another name     -> replace (identities are never renamed)
    * explicitly listed in *replace*  -> replace
    * recorded but never Connected    -> left alone, reported in ``failed``
    """
    plan = Plan()
    forced = set(replace)

    unknown = forced - set(desired)
    if unknown:
        raise ValueError(f"cannot replace keys that are not desired: {', '.join(sorted(unknown))}")

    for key, unit in desired.items():
        rec = current.get(key)
        if rec is None:
            plan.to_create[key] = unit
        elif key in forced or rec.display_name != unit.display_name:
            plan.to_replace[key] = unit
        elif rec.outcome != OUTCOME_CONNECTED:
            plan.failed.append(key)
        else:
            plan.unchanged.append(key)

    for key in current:
        if key not in desired:
            plan.to_destroy.append(key)

    return plan
