"""ZIP code tiles for discovery.

Loads data/zip_codes.csv once and selects the most populous N% of ZIPs for
a set of states (or nationwide). The selection is deterministic: ties in
population are broken by ZIP code.
"""

import csv
import math
import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from loguru import logger
from pydantic import BaseModel

DEFAULT_CSV_PATH = Path(__file__).resolve().parents[2] / "data" / "zip_codes.csv"


class ZipCode(BaseModel):
    zip_code: str
    population: float = 0
    area_sqmi: float = 0
    city: str = ""
    state: str = ""
    latitude: float
    longitude: float
    radius_mi: float = 0

    @property
    def search_radius_mi(self) -> float:
        if self.radius_mi > 0:
            return self.radius_mi
        return calculate_search_radius(self.area_sqmi)

    @property
    def search_radius_meters(self) -> int:
        # Places caps the radius at 50 km
        return min(int(self.search_radius_mi * 1609.34), 50000)


def calculate_search_radius(area_sqmi: float) -> float:
    """Radius of a circle with the ZIP's land area."""
    return math.sqrt(area_sqmi / math.pi) if area_sqmi > 0 else 1.0


def _float(value: Optional[str]) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


class ZipCodeIndex:
    """In-memory ZIP code table, loaded lazily."""

    def __init__(self, csv_path: Optional[Path] = None):
        self.csv_path = Path(csv_path or os.getenv("ZIP_CODES_CSV") or DEFAULT_CSV_PATH)
        self._zips: Optional[List[ZipCode]] = None
        self._by_code: Dict[str, ZipCode] = {}

    def load(self) -> List[ZipCode]:
        if self._zips is not None:
            return self._zips

        zips = []
        with open(self.csv_path, newline="", encoding="utf-8") as f:
            for row in csv.DictReader(f):
                if not row.get("zip_code"):
                    continue
                zips.append(ZipCode(
                    zip_code=row["zip_code"].strip().zfill(5),
                    population=_float(row.get("population")),
                    area_sqmi=_float(row.get("area_sqmi")),
                    city=(row.get("city") or "").strip(),
                    state=(row.get("state") or "").strip().upper(),
                    latitude=_float(row.get("lat")),
                    longitude=_float(row.get("lon")),
                    radius_mi=_float(row.get("radius_mi")),
                ))

        self._zips = zips
        self._by_code = {z.zip_code: z for z in zips}
        logger.info(f"Loaded {len(zips)} ZIP codes from {self.csv_path}")
        return zips

    def select(
        self,
        states: Optional[Sequence[str]] = None,
        top_percent: int = 30,
        nationwide: bool = False,
        max_zips: Optional[int] = None,
    ) -> List[ZipCode]:
        """Top `top_percent`% of ZIPs by population, optionally capped."""
        zips = self.load()
        if not nationwide:
            if not states:
                raise ValueError("Either states or nationwide must be provided")
            wanted = {s.upper() for s in states}
            zips = [z for z in zips if z.state in wanted]

        ranked = sorted(zips, key=lambda z: (-z.population, z.zip_code))
        count = math.ceil(len(ranked) * top_percent / 100)
        if max_zips is not None:
            count = min(count, max_zips)
        return ranked[:count]

    def get_many(self, zip_codes: Sequence[str]) -> List[ZipCode]:
        """Look up ZIPs by code, preserving order. Unknown codes are dropped."""
        self.load()
        missing = [c for c in zip_codes if c not in self._by_code]
        if missing:
            logger.warning(f"{len(missing)} ZIP codes not found in {self.csv_path.name}: {missing[:5]}")
        return [self._by_code[c] for c in zip_codes if c in self._by_code]

    def available_states(self) -> List[str]:
        return sorted({z.state for z in self.load()})

    def statistics(self) -> Dict[str, float]:
        zips = self.load()
        total_population = sum(z.population for z in zips)
        return {
            "total_zip_codes": len(zips),
            "total_states": len({z.state for z in zips}),
            "avg_population": total_population / len(zips) if zips else 0,
            "total_population": total_population,
        }
