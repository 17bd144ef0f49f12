import asyncio
import base64
import binascii
import json
import logging
import time as time_module
from collections.abc import Callable
from datetime import date, datetime, time, timedelta
from typing import Any

import httpx

from slotbooker.config import settings
from slotbooker.models.schemas import TimeWindow
from slotbooker.providers.base import (
    BookingCreation,
    ProviderBooking,
    ProviderError,
    Slot,
    SlotProvider,
)

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def decode_token_expiry(token: str) -> float | None:
    """Read the `exp` claim (epoch seconds) from a JWT without verifying it."""
    try:
        payload = token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (IndexError, ValueError, binascii.Error):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    return float(exp) if exp is not None else None


class TokenManager:
    """
    Caches the platform's bearer token and renews it before it expires.

    Callers only ever see `get_valid_token()`; the token is refreshed by
    logging in again once it is within REFRESH_MARGIN_SECONDS of its expiry.
    """

    REFRESH_MARGIN_SECONDS = 60

    def __init__(
        self,
        client: httpx.AsyncClient,
        email: str,
        password: str,
        clock: Callable[[], float] = time_module.time,
    ) -> None:
        self._client = client
        self._email = email
        self._password = password
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    async def get_valid_token(self) -> str:
        async with self._lock:
            refresh_at = self._expires_at - self.REFRESH_MARGIN_SECONDS
            if self._token is None or self._clock() >= refresh_at:
                await self._login()
            return self._token  # type: ignore[return-value]

    def invalidate(self) -> None:
        self._token = None
        self._expires_at = 0.0

    async def _login(self) -> None:
        if not self._email or not self._password:
            raise ProviderError("DoInSport credentials not configured")

        try:
            response = await self._client.post(
                "/client_login_check",
                json={"username": self._email, "password": self._password},
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Login request failed: {e}") from e

        if response.status_code != 200:
            raise ProviderError(f"Login failed: {response.status_code} {response.reason_phrase}")

        token = response.json().get("token")
        if not token:
            raise ProviderError("Login response did not contain a token")

        expiry = decode_token_expiry(token)
        self._token = token
        self._expires_at = expiry or self._clock() + DEFAULT_TOKEN_LIFETIME_SECONDS
        logger.info("Authenticated with DoInSport")


class DoInSportProvider(SlotProvider):
    """
    HTTP client for the DoInSport club booking API.

    Slots come from the club planning endpoint, bookings are created against a
    timetable block price and carry a Stripe payment whose client secret is
    returned as the payment reference. Every request uses a bearer token from
    TokenManager and is bounded by the provider timeout; a 401 triggers one
    re-login and retry.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None) -> None:
        if not settings.doinsport_email or not settings.doinsport_password:
            logger.warning(
                "DoInSport credentials not configured. "
                "Set DOINSPORT_EMAIL and DOINSPORT_PASSWORD environment variables."
            )
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._tokens: TokenManager | None = None
        self._user_client_id: str | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=settings.doinsport_base_url,
                timeout=settings.provider_timeout_seconds,
                transport=self._transport,
                headers={"Accept": "application/json"},
            )
        return self._client

    @property
    def tokens(self) -> TokenManager:
        if self._tokens is None:
            self._tokens = TokenManager(
                self.client, settings.doinsport_email, settings.doinsport_password
            )
        return self._tokens

    async def authenticate(self) -> bool:
        await self.tokens.get_valid_token()
        return True

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        for attempt in range(2):
            token = await self.tokens.get_valid_token()
            try:
                response = await self.client.request(
                    method, path, headers={"Authorization": f"Bearer {token}"}, **kwargs
                )
            except httpx.TimeoutException as e:
                raise ProviderError(f"{method} {path} timed out") from e
            except httpx.HTTPError as e:
                raise ProviderError(f"{method} {path} failed: {e}") from e

            if response.status_code == 401 and attempt == 0:
                logger.info("DoInSport token rejected, logging in again")
                self.tokens.invalidate()
                continue

            if response.is_error:
                raise ProviderError(self._error_message(response))
            return response.json() if response.content else None

        raise ProviderError(f"{method} {path} unauthorized")

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict):
            for key in ("hydra:description", "detail", "message"):
                if body.get(key):
                    return str(body[key])
        return f"DoInSport API error {response.status_code}"

    async def _get_user_client_id(self) -> str:
        if self._user_client_id is None:
            me = await self._request("GET", "/me") or {}
            user_clients = me.get("userClients") or [me]
            client_id = user_clients[0].get("id")
            if not client_id:
                raise ProviderError("Could not determine DoInSport client id")
            self._user_client_id = str(client_id)
        return self._user_client_id

    async def search_slots(
        self,
        target_date: date,
        window: TimeWindow,
        duration_minutes: int | None = None,
    ) -> list[Slot]:
        payload = await self._request(
            "GET",
            f"/clubs/playgrounds/plannings/{target_date.isoformat()}",
            params={
                "club.id": settings.doinsport_club_id,
                "from": window.start.strftime("%H:%M:%S"),
                "to": window.end.strftime("%H:%M:%S"),
                "activities.id": settings.doinsport_activity_id,
                "bookingType": "unique",
            },
        )
        slots = self._parse_planning(payload or {}, target_date, duration_minutes)
        slots = [s for s in slots if window.start <= s.start_time <= window.end]
        logger.info(
            f"Found {len(slots)} slots on {target_date} between "
            f"{window.start:%H:%M} and {window.end:%H:%M}"
        )
        return slots

    def _parse_planning(
        self, payload: dict[str, Any], target_date: date, duration_minutes: int | None
    ) -> list[Slot]:
        slots: list[Slot] = []
        for playground in payload.get("hydra:member", []):
            name = playground.get("name")
            if not name:
                continue
            for activity in playground.get("activities", []):
                for entry in activity.get("slots", []):
                    start = self._parse_time(entry.get("startAt"))
                    if start is None:
                        continue
                    for price in entry.get("prices", []):
                        if not price.get("bookable", False):
                            continue
                        duration = int(price.get("duration") or 0)
                        if duration_minutes and duration != duration_minutes * 60:
                            continue
                        slots.append(
                            Slot(
                                booking_date=target_date,
                                start_time=start,
                                duration_seconds=duration,
                                resource_name=name,
                                resource_id=str(playground.get("id")),
                                price=price.get("pricePerParticipant"),
                                price_id=str(price.get("id")),
                            )
                        )
        return slots

    @staticmethod
    def _parse_time(value: str | None) -> time | None:
        if not value:
            return None
        for fmt in ("%H:%M", "%H:%M:%S"):
            try:
                return datetime.strptime(value, fmt).time()
            except ValueError:
                continue
        return None

    async def create_booking(self, slot: Slot, activity: str) -> BookingCreation:
        user_client_id = await self._get_user_client_id()
        start = datetime.combine(slot.booking_date, slot.start_time)
        end = start + timedelta(seconds=slot.duration_seconds)

        body = {
            "club": f"/clubs/{settings.doinsport_club_id}",
            "activity": f"/activities/{settings.doinsport_activity_id}",
            "playgrounds": [f"/clubs/playgrounds/{slot.resource_id}"],
            "timetableBlockPrice": f"/clubs/playgrounds/timetables/blocks/prices/{slot.price_id}",
            "startAt": start.strftime("%Y-%m-%d %H:%M:%S"),
            "endAt": end.strftime("%Y-%m-%d %H:%M:%S"),
            "userClient": f"/user-clients/{user_client_id}",
            "paymentMethod": "card",
            "name": activity,
        }
        payload = await self._request("POST", "/clubs/bookings", json=body)
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ProviderError("Booking response did not contain an id")

        booking_id = str(payload["id"])
        logger.info(
            f"Created booking {booking_id}: {slot.resource_name} "
            f"on {slot.booking_date} at {slot.start_time:%H:%M}"
        )
        return BookingCreation(
            booking_id=booking_id,
            payment_reference=self._extract_payment_reference(payload),
            price=payload.get("price", slot.price),
        )

    @staticmethod
    def _extract_payment_reference(payload: dict[str, Any]) -> str | None:
        for payment in payload.get("payments") or []:
            metadata = payment.get("metadata") or {}
            if metadata.get("clientSecret"):
                return str(metadata["clientSecret"])
        return None

    async def cancel_booking(self, booking_id: str) -> bool:
        await self._request("PUT", f"/clubs/bookings/{booking_id}", json={"canceled": True})
        logger.info(f"Cancelled booking {booking_id}")
        return True

    async def list_upcoming(self) -> list[ProviderBooking]:
        user_client_id = await self._get_user_client_id()
        payload = await self._request(
            "GET",
            "/clubs/bookings",
            params={
                "userClient.id": user_client_id,
                "startAt[after]": date.today().isoformat(),
                "canceled": "false",
                "order[startAt]": "asc",
            },
        )
        bookings: list[ProviderBooking] = []
        for member in (payload or {}).get("hydra:member", []):
            start = datetime.fromisoformat(member["startAt"])
            end = datetime.fromisoformat(member["endAt"]) if member.get("endAt") else None
            playgrounds = member.get("playgrounds") or [{}]
            bookings.append(
                ProviderBooking(
                    booking_id=str(member["id"]),
                    booking_date=start.date(),
                    start_time=start.time(),
                    end_time=end.time() if end else None,
                    resource_name=playgrounds[0].get("name"),
                    price=member.get("price"),
                    status="confirmed" if member.get("confirmed") else "pending",
                )
            )
        return bookings

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            self._tokens = None


class MockSlotProvider(SlotProvider):
    """Mock provider for development without hitting the real booking platform."""

    def __init__(self) -> None:
        self.bookings: dict[str, ProviderBooking] = {}

    async def authenticate(self) -> bool:
        return True

    async def search_slots(
        self,
        target_date: date,
        window: TimeWindow,
        duration_minutes: int | None = None,
    ) -> list[Slot]:
        duration = (duration_minutes or 60) * 60
        slots = []
        start = datetime.combine(target_date, window.start)
        end = datetime.combine(target_date, window.end)
        for name in settings.playground_names:
            current = start
            while current <= end:
                slots.append(
                    Slot(
                        booking_date=target_date,
                        start_time=current.time(),
                        duration_seconds=duration,
                        resource_name=name,
                        resource_id=name.lower().replace(" ", "-"),
                        price=1000,
                        price_id="mock-price",
                    )
                )
                current += timedelta(minutes=30)
        return slots

    async def create_booking(self, slot: Slot, activity: str) -> BookingCreation:
        await asyncio.sleep(0)
        booking_id = f"MOCK-{datetime.now().strftime('%Y%m%d%H%M%S%f')}"
        end = datetime.combine(slot.booking_date, slot.start_time) + timedelta(
            seconds=slot.duration_seconds
        )
        self.bookings[booking_id] = ProviderBooking(
            booking_id=booking_id,
            booking_date=slot.booking_date,
            start_time=slot.start_time,
            end_time=end.time(),
            resource_name=slot.resource_name,
            price=slot.price,
            status="confirmed",
        )
        return BookingCreation(
            booking_id=booking_id,
            payment_reference=f"pi_{booking_id}_secret_mock",
            price=slot.price,
        )

    async def cancel_booking(self, booking_id: str) -> bool:
        return self.bookings.pop(booking_id, None) is not None

    async def list_upcoming(self) -> list[ProviderBooking]:
        return sorted(self.bookings.values(), key=lambda b: (b.booking_date, b.start_time))

    async def close(self) -> None:
        pass
