from datetime import datetime

from medflow.models.appointment import AppointmentStatus
from medflow.scheduling.store import AppointmentStore


def intervals_overlap(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    # Half-open ranges: touching boundaries do not overlap.
    return start_a < end_b and end_a > start_b


def check_conflict(
    store: AppointmentStore,
    doctor_id: str,
    start_time: datetime,
    end_time: datetime,
    exclude_appointment_id: str | None = None,
) -> bool:
    """Return True when the doctor already has a non-cancelled appointment overlapping [start_time, end_time)."""
    overlapping = store.find_overlapping(
        doctor_id,
        start_time,
        end_time,
        status_not_in=(AppointmentStatus.CANCELLED,),
        exclude_id=exclude_appointment_id,
    )
    return len(overlapping) > 0
