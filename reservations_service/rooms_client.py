# reservations_service/rooms_client.py
import logging
import os

import httpx

from common.circuit_breaker import rooms_circuit_breaker

logger = logging.getLogger(__name__)

# Unset: room existence is not checked before booking
ROOMS_SERVICE_URL = os.getenv("ROOMS_SERVICE_URL")


def room_is_bookable(room_id: int) -> bool:
    """
    Ask the Rooms service whether ``room_id`` exists and is active.

    Only a definite answer from the Rooms service rejects a booking. While
    the service is unreachable or its circuit is open the check passes and
    the reservation ledger remains the authority on conflicts.

    Parameters
    ----------
    room_id : int
        Room to look up.

    Returns
    -------
    bool
        False if the Rooms service reports the room missing or inactive.
    """
    if not rooms_circuit_breaker.allow_request():
        logger.warning(f"Rooms circuit open, skipping existence check for room {room_id}")
        return True

    try:
        resp = httpx.get(f"{ROOMS_SERVICE_URL}/api/v1/rooms/{room_id}", timeout=5.0)
    except httpx.RequestError as exc:
        rooms_circuit_breaker.record_failure()
        logger.warning(f"Rooms service unreachable while checking room {room_id}: {exc}")
        return True

    if resp.status_code == 404:
        rooms_circuit_breaker.record_success()
        return False

    if resp.status_code != 200:
        rooms_circuit_breaker.record_failure()
        logger.warning(f"Rooms service returned {resp.status_code} for room {room_id}")
        return True

    rooms_circuit_breaker.record_success()
    return bool(resp.json().get("is_active", True))
