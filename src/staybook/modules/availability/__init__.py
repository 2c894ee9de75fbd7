from staybook.modules.availability.blocks import HostCalendar
from staybook.modules.availability.conflicts import ConflictChecker, ranges_overlap
from staybook.modules.availability.index import AvailabilityIndex, AvailabilitySnapshot, availability_index
from staybook.modules.availability.refresh import CalendarRefreshTask

__all__ = [
    "AvailabilityIndex",
    "AvailabilitySnapshot",
    "CalendarRefreshTask",
    "ConflictChecker",
    "HostCalendar",
    "availability_index",
    "ranges_overlap",
]
