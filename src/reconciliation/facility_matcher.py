# src/reconciliation/facility_matcher.py — v2
"""Facility identity resolution.

Match order: external identifier, exact normalized name or alias, then
fuzzy name/alias match (rapidfuzz token-sort ratio) above a threshold.
A hint with neither name nor external id maps to the scope's single
unidentified profile, so unnamed documents are compared with each other.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Literal

from rapidfuzz import fuzz, process

from dealintake.core.models import FacilityHint, FacilityProfile

logger = logging.getLogger(__name__)

MatchMethod = Literal["external_id", "exact", "fuzzy", "unidentified"]

UNIDENTIFIED_FACILITY = "Unidentified Facility"

_LEGAL_SUFFIXES = re.compile(r"\b(llc|inc|corp|co|ltd|lp|llp|the)\b")
_PUNCT = re.compile(r"[^\w\s]")


@dataclass(frozen=True)
class FacilityMatch:
    profile: FacilityProfile
    method: MatchMethod
    score: float = 100.0


def normalize_facility_name(name: str) -> str:
    """Lowercase, drop punctuation and legal suffixes, collapse whitespace."""
    text = _PUNCT.sub(" ", name.casefold().replace("&", " and "))
    text = _LEGAL_SUFFIXES.sub(" ", text)
    return " ".join(text.split())


def match_facility(
    hint: FacilityHint,
    profiles: list[FacilityProfile],
    threshold: float = 88.0,
) -> FacilityMatch | None:
    """Find the profile ``hint`` refers to, or None if it is a new facility."""
    if hint.external_id:
        for profile in profiles:
            if profile.external_id and profile.external_id == hint.external_id:
                return FacilityMatch(profile, "external_id")

    if not hint.name:
        if hint.external_id:
            return None
        for profile in profiles:
            if profile.canonical_name == UNIDENTIFIED_FACILITY and not profile.external_id:
                return FacilityMatch(profile, "unidentified")
        return None
    target = normalize_facility_name(hint.name)
    if not target:
        return None

    choices: dict[tuple[int, int], str] = {}
    for i, profile in enumerate(profiles):
        # A conflicting external id means a different facility with a similar name.
        if hint.external_id and profile.external_id and profile.external_id != hint.external_id:
            continue
        for j, name in enumerate([profile.canonical_name, *profile.aliases]):
            normalized = normalize_facility_name(name)
            if normalized == target:
                return FacilityMatch(profile, "exact")
            choices[(i, j)] = normalized

    if not choices:
        return None
    result = process.extractOne(
        target,
        choices,
        scorer=fuzz.token_sort_ratio,
        score_cutoff=threshold,
    )
    if result is None:
        return None
    _, score, key = result
    profile = profiles[key[0]]
    logger.debug("Fuzzy facility match %r → %r (%.1f)", hint.name, profile.canonical_name, score)
    return FacilityMatch(profile, "fuzzy", score)
