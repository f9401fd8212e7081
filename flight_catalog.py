from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Mapping, Optional, Tuple


class FareClass(str, Enum):
    ECONOMY = "Economy"
    BUSINESS = "Business"


class UnknownFlightError(LookupError):
    pass


@dataclass(frozen=True)
class Flight:
    id: int
    airline: str
    time: str
    duration: str
    price: int
    route: str
    fare_class: FareClass


DEFAULT_FLIGHTS: Tuple[Flight, ...] = (
    Flight(1, "SkyDrift", "06:00 AM - 08:15 AM", "2h 15m", 125, "IST -> LHR", FareClass.ECONOMY),
    Flight(2, "SkyDrift", "08:00 AM - 10:30 AM", "2h 30m", 120, "IST -> LHR", FareClass.ECONOMY),
    Flight(3, "SkyDrift", "10:15 AM - 12:45 PM", "2h 30m", 135, "IST -> LHR", FareClass.ECONOMY),
    Flight(4, "SkyDrift", "02:00 PM - 04:45 PM", "2h 45m", 145, "IST -> LHR", FareClass.ECONOMY),
    Flight(5, "SkyDrift", "04:30 PM - 07:00 PM", "2h 30m", 150, "IST -> LHR", FareClass.BUSINESS),
    Flight(6, "SkyDrift", "06:00 PM - 08:30 PM", "2h 30m", 140, "IST -> LHR", FareClass.ECONOMY),
    Flight(7, "SkyDrift", "08:00 PM - 10:30 PM", "2h 30m", 95, "IST -> LHR", FareClass.ECONOMY),
    Flight(8, "SkyDrift", "10:45 PM - 01:15 AM+1", "2h 30m", 110, "IST -> LHR", FareClass.ECONOMY),
)


class FlightCatalog:
    """
    Fixed, in-memory flight list. Ids must be unique; order is the display order.
    """

    def __init__(self, flights: Iterable[Flight] = DEFAULT_FLIGHTS) -> None:
        self._flights: Tuple[Flight, ...] = tuple(flights)
        by_id: dict[int, Flight] = {}
        for f in self._flights:
            if f.id in by_id:
                raise ValueError(f"duplicate flight id {f.id}")
            by_id[f.id] = f
        self._by_id: Mapping[int, Flight] = by_id

    def __len__(self) -> int:
        return len(self._flights)

    def __iter__(self):
        return iter(self._flights)

    def __contains__(self, flight_id: object) -> bool:
        return flight_id in self._by_id

    @property
    def flights(self) -> Tuple[Flight, ...]:
        return self._flights

    def get(self, flight_id: Optional[int]) -> Optional[Flight]:
        if flight_id is None:
            return None
        return self._by_id.get(flight_id)

    def require(self, flight_id: int) -> Flight:
        flight = self._by_id.get(flight_id)
        if flight is None:
            raise UnknownFlightError(f"flight id {flight_id!r} is not in the catalog")
        return flight
