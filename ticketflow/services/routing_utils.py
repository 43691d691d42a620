"""
Scoring helpers for the assignment engine: great-circle distance, nearest
office, per-agent score terms and deterministic winner selection.
"""

from typing import Optional, Sequence

import numpy as np

from ticketflow.models import Agent, Office, ScoreTerm

EARTH_RADIUS_KM = 6371.0

OFFICE_MATCH_POINTS = 100
CATEGORY_MATCH_POINTS = 30
LANGUAGE_MATCH_POINTS = 30
VIP_POINTS = 50
LOAD_PENALTY_PER_TICKET = 10
VIP_SEGMENT = "VIP"


def haversine_many(lat: float, lon: float, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Vectorised haversine from one point to many."""
    phi1 = np.radians(lat)
    phi2 = np.radians(lats)
    d_phi = phi2 - phi1
    d_lambda = np.radians(lons - lon)
    a = np.sin(d_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    return EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def nearest_office(lat: float, lon: float, offices: Sequence[Office]) -> Optional[tuple[Office, float]]:
    """Nearest office with known coordinates and its distance in km. First one wins on equal distance."""
    located = [o for o in offices if o.has_coordinates]
    if not located:
        return None
    lats = np.array([o.latitude for o in located], dtype=np.float64)
    lons = np.array([o.longitude for o in located], dtype=np.float64)
    distances = haversine_many(lat, lon, lats, lons)
    idx = int(np.argmin(distances))
    return located[idx], float(distances[idx])


def match_office_by_city(city: Optional[str], offices: Sequence[Office]) -> Optional[Office]:
    """First office whose name or address contains the city (case-insensitive)."""
    if not city or not city.strip():
        return None
    needle = city.strip().lower()
    for office in offices:
        if needle in office.name.lower() or (office.address and needle in office.address.lower()):
            return office
    return None


def score_terms(
    agent: Agent,
    target_office: str,
    category: str = "",
    language: str = "",
    segment: Optional[str] = None,
) -> list[ScoreTerm]:
    """Independent score contributions of one agent for one ticket."""
    terms: list[ScoreTerm] = []
    skills = set(agent.skills)
    if agent.office == target_office:
        terms.append(ScoreTerm(label="Office", points=OFFICE_MATCH_POINTS))
    if category and category in skills:
        terms.append(ScoreTerm(label="Category", points=CATEGORY_MATCH_POINTS))
    if language and language in skills:
        terms.append(ScoreTerm(label="Language", points=LANGUAGE_MATCH_POINTS))
    if segment == VIP_SEGMENT:
        if VIP_SEGMENT in skills:
            terms.append(ScoreTerm(label="VIP", points=VIP_POINTS))
        else:
            terms.append(ScoreTerm(label="Non-VIP", points=-VIP_POINTS))
    terms.append(ScoreTerm(label="Load", points=-LOAD_PENALTY_PER_TICKET * agent.current_load))
    return terms


def format_terms(terms: Sequence[ScoreTerm]) -> str:
    return ", ".join(f"{t.points:+d} {t.label}" for t in terms)


def select_best(scores: Sequence[int], loads: Sequence[int]) -> int:
    """
    Index of the winner: highest score, then lowest load, then earliest position.
    np.lexsort is stable and sorts by the last key first.
    """
    if len(scores) == 0:
        raise ValueError("No candidates to select from")
    order = np.lexsort((np.asarray(loads, dtype=np.int64), -np.asarray(scores, dtype=np.int64)))
    return int(order[0])
