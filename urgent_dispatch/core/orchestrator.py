# urgent_dispatch/core/orchestrator.py
"""
Urgent request lifecycle.

create -> (scheduled) dispatch -> accept | reject -> complete | cancel

The orchestrator owns validation, rate limiting, price estimation, candidate
bookkeeping and the cascading side effects of an accept. Storage guarantees
the atomicity of accept/reject (conditional updates); this class only decides
what to do with the outcome.

Side channels (in-app notifications, real-time events, scheduling) are
best-effort: failures are logged and counted, never raised to the caller.
Real-time events run as background tasks so relay latency never reaches the
caller; ``drain_side_channels`` waits for them on shutdown.
"""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from urgent_dispatch.core.domain import (
    REASON_ASSIGNED_TO_OTHER,
    REASON_NO_RESPONSE,
    REASON_REJECTED_BY_PROFESSIONAL,
    AcceptResult,
    Candidate,
    GeoPoint,
    ProfessionalProfile,
    Rejection,
    RequestStatus,
    UrgentRequest,
    UrgentRequestView,
)
from urgent_dispatch.core.errors import (
    InvalidTransitionError,
    NotAuthorizedError,
    NotCandidateError,
    NotFoundError,
    NotOwnerError,
    RateLimitError,
    TerminalStateError,
    ValidationError,
)
from urgent_dispatch.core.geo import validate_coordinates
from urgent_dispatch.core.lifecycle import ensure_transition, sources_for
from urgent_dispatch.core.matching import MatchingEngine
from urgent_dispatch.core.ports import (
    AsyncProfessionalDirectory,
    AsyncUrgentRequestStore,
    DispatchScheduler,
    NotificationGateway,
    RealtimeGateway,
)
from urgent_dispatch.core.pricing import UrgentPricing
from urgent_dispatch.infra.logging_config import LogContext, get_logger, mask_coordinates
from urgent_dispatch.infra.metrics import AppMetrics

logger = get_logger(__name__)

# In-app notification types
NOTIFY_NEW_REQUEST = "urgent_request"
NOTIFY_ACCEPTED = "urgent_accepted"
NOTIFY_ASSIGNED_TO_OTHER = "urgent_assigned_to_other"
NOTIFY_CANCELLED = "urgent_cancelled"
NOTIFY_COMPLETED = "urgent_completed"
NOTIFY_EXPIRED = "urgent_expired"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class DispatchPolicy:
    min_radius_km: float = 1.0
    max_radius_km: float = 50.0
    rate_limit_count: int = 5
    rate_limit_window_seconds: int = 3600
    candidate_response_timeout_seconds: int = 600
    allow_cancel_after_assignment: bool = False

    @classmethod
    def from_settings(cls, s) -> "DispatchPolicy":
        return cls(
            min_radius_km=s.urgent_min_radius_km,
            max_radius_km=s.urgent_max_radius_km,
            rate_limit_count=s.urgent_rate_limit_count,
            rate_limit_window_seconds=s.urgent_rate_limit_window_seconds,
            candidate_response_timeout_seconds=s.candidate_response_timeout_seconds,
            allow_cancel_after_assignment=s.allow_cancel_after_assignment,
        )


class DispatchOrchestrator:
    def __init__(
        self,
        *,
        store: AsyncUrgentRequestStore,
        directory: AsyncProfessionalDirectory,
        matching: MatchingEngine,
        pricing: UrgentPricing,
        scheduler: DispatchScheduler,
        notifications: NotificationGateway,
        realtime: RealtimeGateway,
        policy: DispatchPolicy | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.directory = directory
        self.matching = matching
        self.pricing = pricing
        self.scheduler = scheduler
        self.notifications = notifications
        self.realtime = realtime
        self.policy = policy or DispatchPolicy()
        self.clock = clock
        self._side_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Best-effort side channels
    # ------------------------------------------------------------------

    async def _notify(self, user_id: str, notification_type: str, message: str, payload: dict[str, Any]) -> None:
        try:
            await self.notifications.create_notification(user_id, notification_type, message, payload)
        except Exception as e:
            logger.warning(f"Notification {notification_type} to {user_id} failed: {e}")
            AppMetrics.notification_failed("in_app")

    def _realtime(self, event: str, request: UrgentRequest, data: Any) -> None:
        task = asyncio.create_task(self._send_realtime(event, request, data), name=f"realtime:{event}:{request.id}")
        self._side_tasks.add(task)
        task.add_done_callback(self._side_tasks.discard)

    async def _send_realtime(self, event: str, request: UrgentRequest, data: Any) -> None:
        try:
            if event == "accepted":
                await self.realtime.notify_accepted(request, data)
            elif event == "professionals":
                await self.realtime.notify_professionals(request, data)
            else:
                await self.realtime.notify_status_update(request, data)
        except Exception as e:
            logger.warning(f"Real-time {event} event failed: {e}", extra={"request_id": request.id})
            AppMetrics.notification_failed("realtime")

    async def drain_side_channels(self) -> None:
        """Wait for pending real-time events, including ones started meanwhile."""
        while self._side_tasks:
            await asyncio.gather(*list(self._side_tasks), return_exceptions=True)

    async def _schedule(self, request_id: str, *, is_retry: bool) -> None:
        try:
            await self.scheduler.schedule_dispatch(request_id, is_retry=is_retry)
        except Exception as e:
            logger.error(
                f"Failed to schedule dispatch (retry={is_retry}): {e}",
                extra={"request_id": request_id},
                exc_info=True,
            )
            AppMetrics.schedule_failed()

    async def _track(
        self,
        request_id: str,
        previous: Optional[RequestStatus],
        new: RequestStatus,
        notes: str,
        changed_by: Optional[str] = None,
    ) -> None:
        await self.store.add_tracking(
            request_id,
            RequestStatus(previous).value if previous is not None else None,
            RequestStatus(new).value,
            notes,
            changed_by,
        )
        if previous != new:
            AppMetrics.request_transition(
                RequestStatus(previous).value if previous is not None else None,
                RequestStatus(new).value,
            )

    async def _load(self, request_id: str) -> UrgentRequest:
        request = await self.store.get_request(request_id)
        if request is None:
            raise NotFoundError(f"Urgent request {request_id} not found")
        return request

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    def _validate_new_request(self, description: Optional[str], location: Optional[GeoPoint], radius_km: Any) -> None:
        if not description or not description.strip():
            raise ValidationError("Description is required")
        if location is None:
            raise ValidationError("Location is required")
        if not validate_coordinates(location.lat, location.lng):
            raise ValidationError("Invalid coordinates")
        if isinstance(radius_km, bool) or not isinstance(radius_km, (int, float)):
            raise ValidationError("Radius must be a number")
        if not self.policy.min_radius_km <= radius_km <= self.policy.max_radius_km:
            raise ValidationError(
                f"Radius must be between {self.policy.min_radius_km:g} and {self.policy.max_radius_km:g} km"
            )

    async def create_request(
        self,
        client_id: str,
        description: Optional[str],
        location: Optional[GeoPoint],
        radius_km: float,
        service_category: Optional[str] = None,
        service_id: Optional[str] = None,
    ) -> UrgentRequest:
        self._validate_new_request(description, location, radius_km)

        now = self.clock()
        window_start = now - timedelta(seconds=self.policy.rate_limit_window_seconds)
        recent = await self.store.count_requests_since(client_id, window_start)
        if recent >= self.policy.rate_limit_count:
            AppMetrics.request_rate_limited()
            logger.warning(f"Client rate limited ({recent} requests in window)", extra={"client_id": client_id})
            raise RateLimitError(
                f"Too many urgent requests: at most {self.policy.rate_limit_count} "
                f"per {self.policy.rate_limit_window_seconds // 60} minutes",
                retry_after=self.policy.rate_limit_window_seconds,
            )

        price = await self.pricing.estimate_price(service_category, float(radius_km))

        request = await self.store.create_request(
            UrgentRequest(
                id=str(uuid.uuid4()),
                client_id=client_id,
                description=description.strip(),
                latitude=location.lat,
                longitude=location.lng,
                radius_km=float(radius_km),
                status=RequestStatus.PENDING,
                price_estimate=price,
                service_id=service_id,
                service_category=service_category,
                created_at=now,
            )
        )
        await self._track(request.id, None, RequestStatus.PENDING, "Urgent request created", client_id)
        AppMetrics.request_created(service_category)

        LogContext(logger, request_id=request.id, client_id=client_id).info(
            f"Urgent request created at {mask_coordinates(location.lat, location.lng)} "
            f"r={radius_km}km category={service_category or '-'} price={price}"
        )

        await self._schedule(request.id, is_retry=False)
        return request

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, request_id: str, is_retry: bool = False) -> list[Candidate]:
        """
        Find, record and notify candidates for a pending request.

        Idempotent: professionals already recorded are not re-inserted, and a
        candidate is notified once. Open candidates that an interrupted run
        recorded but never notified are picked up by the next run, so a
        queued retry of a failed dispatch still reaches them. Non-pending
        requests are skipped. Returns the candidates notified by this run.
        """
        ctx = LogContext(logger, request_id=request_id)

        with AppMetrics.track_dispatch_time(is_retry):
            request = await self.store.get_request(request_id)
            if request is None or request.status != RequestStatus.PENDING:
                ctx.info(f"Dispatch skipped: request {'missing' if request is None else request.status.value}")
                AppMetrics.dispatch_run("skipped", is_retry)
                return []

            matches = await self.matching.find_candidates(
                request.location, request.radius_km, request.service_category, is_retry=is_retry
            )
            by_professional = {match.professional_id: match for match in matches}

            recorded = 0
            for match in matches:
                if await self.store.add_candidate(request_id, match.professional_id, match.distance_km) is not None:
                    recorded += 1
            if recorded:
                AppMetrics.candidates_recorded(recorded)

            open_candidates = await self.store.list_candidates(request_id, unresponded_only=True)
            to_notify = sorted(
                (c for c in open_candidates if c.awaiting_notification),
                key=lambda c: c.distance_km,
            )

            if not to_notify:
                if matches:
                    await self._track(request_id, request.status, request.status, "No new professionals available")
                    AppMetrics.dispatch_run("no_new_candidates", is_retry)
                    ctx.info(f"Dispatch found {len(matches)} professionals, all already notified")
                else:
                    await self._track(request_id, request.status, request.status, "No professionals available")
                    AppMetrics.dispatch_run("no_candidates", is_retry)
                    ctx.info("Dispatch found no professionals")
                return []

            for candidate in to_notify:
                match = by_professional.get(candidate.professional_id)
                # Outside this run's matches the profile is unknown; notify anyway
                if match is not None and not match.profile.can_receive_push:
                    continue
                await self._notify(
                    candidate.professional_id,
                    NOTIFY_NEW_REQUEST,
                    f"Urgent request {candidate.distance_km:.1f} km away: {request.description}",
                    {
                        "request_id": request.id,
                        "distance_km": round(candidate.distance_km, 2),
                        "description": request.description,
                        "location": {"lat": request.latitude, "lng": request.longitude},
                        "price_estimate": request.price_estimate,
                    },
                )
            await self.store.mark_candidates_notified([c.id for c in to_notify])

            self._realtime(
                "professionals",
                request,
                [
                    {
                        "professional_id": candidate.professional_id,
                        "distance_km": round(candidate.distance_km, 2),
                        "score": (
                            by_professional[candidate.professional_id].total_score
                            if candidate.professional_id in by_professional else None
                        ),
                    }
                    for candidate in to_notify
                ],
            )

            notes = f"{len(to_notify)} professionals notified"
            if is_retry:
                notes += " (retry)"
            await self._track(request_id, request.status, request.status, notes)
            AppMetrics.dispatch_run("notified", is_retry)
            ctx.info(f"Dispatch notified {len(to_notify)} candidates, {recorded} newly recorded (retry={is_retry})")
            return to_notify

    # ------------------------------------------------------------------
    # Accept / reject
    # ------------------------------------------------------------------

    async def _not_candidate_or_terminal(self, request_id: str, professional_id: str) -> Exception:
        """Explain a failed conditional update after the fact."""
        current = await self.store.get_request(request_id)
        if current is not None and current.is_terminal:
            return TerminalStateError(f"Request {request_id} is already {current.status.value}")
        return NotCandidateError(f"Professional {professional_id} has no open candidacy for request {request_id}")

    async def accept(
        self,
        request_id: str,
        professional_id: str,
        professional: Optional[ProfessionalProfile] = None,
    ) -> AcceptResult:
        ctx = LogContext(logger, request_id=request_id, professional_id=professional_id)

        request = await self._load(request_id)
        if request.is_terminal:
            raise TerminalStateError(f"Request {request_id} is already {request.status.value}")

        # The assignment, the cascade over the other candidates and the tracking
        # entry commit together
        outcome = await self.store.accept_candidate(
            request_id,
            professional_id,
            cascade_reason=REASON_ASSIGNED_TO_OTHER,
            notes="Accepted by professional",
        )
        if outcome is None:
            raise await self._not_candidate_or_terminal(request_id, professional_id)

        assignment, updated, others = outcome
        AppMetrics.request_transition(RequestStatus.PENDING.value, RequestStatus.ASSIGNED.value)
        ctx.info(f"Request accepted, {len(others)} other candidates closed")

        if professional is None:
            try:
                professional = await self.directory.get_profile(professional_id)
            except Exception as e:
                ctx.warning(f"Profile lookup for accept notification failed: {e}")
        summary = professional.public_summary() if professional else {"id": professional_id}

        await self._notify(
            updated.client_id,
            NOTIFY_ACCEPTED,
            f"{summary.get('name') or 'A professional'} accepted your urgent request",
            {"request_id": request_id, "assignment_id": assignment.id, "professional": summary},
        )
        self._realtime("accepted", updated, {"assignment_id": assignment.id, "professional": summary})

        for other in others:
            await self._notify(
                other.professional_id,
                NOTIFY_ASSIGNED_TO_OTHER,
                "This urgent request was assigned to another professional",
                {"request_id": request_id},
            )
        return AcceptResult(assignment=assignment, request=updated, closed_candidates=others)

    async def reject(self, request_id: str, professional_id: str, reason: Optional[str] = None) -> Rejection:
        request = await self._load(request_id)
        if request.is_terminal:
            raise TerminalStateError(f"Request {request_id} is already {request.status.value}")

        outcome = await self.store.reject_candidate(
            request_id, professional_id, (reason or "").strip() or REASON_REJECTED_BY_PROFESSIONAL
        )
        if outcome is None:
            raise await self._not_candidate_or_terminal(request_id, professional_id)

        rejection, remaining = outcome
        LogContext(logger, request_id=request_id, professional_id=professional_id).info(
            f"Candidate rejected, {remaining} still open"
        )

        if remaining == 0 and request.status == RequestStatus.PENDING:
            await self._schedule(request_id, is_retry=True)
        return rejection

    # ------------------------------------------------------------------
    # Cancel / complete
    # ------------------------------------------------------------------

    async def _transition(
        self,
        request: UrgentRequest,
        target: RequestStatus,
        *,
        completed_at: Optional[datetime] = None,
    ) -> UrgentRequest:
        allow = self.policy.allow_cancel_after_assignment
        ensure_transition(request.id, request.status, target, allow_cancel_after_assignment=allow)

        updated = await self.store.update_status(
            request.id,
            expected=sources_for(target, allow_cancel_after_assignment=allow),
            new_status=target,
            completed_at=completed_at,
        )
        if updated is None:
            # Lost a race: re-read and report the state we actually hit
            current = await self._load(request.id)
            ensure_transition(request.id, current.status, target, allow_cancel_after_assignment=allow)
            raise InvalidTransitionError(f"Request {request.id} changed concurrently, retry")
        return updated

    async def cancel(self, request_id: str, client_id: str) -> UrgentRequest:
        request = await self._load(request_id)
        if request.client_id != client_id:
            raise NotOwnerError("Only the client who created the request can cancel it")

        updated = await self._transition(request, RequestStatus.CANCELLED)
        await self._track(request_id, request.status, RequestStatus.CANCELLED, "Cancelled by client", client_id)

        open_candidates = await self.store.list_candidates(request_id, unresponded_only=True)
        to_notify = [c.professional_id for c in open_candidates]
        if request.assigned_professional_id and request.assigned_professional_id not in to_notify:
            to_notify.append(request.assigned_professional_id)

        for professional_id in to_notify:
            await self._notify(
                professional_id,
                NOTIFY_CANCELLED,
                "The client cancelled this urgent request",
                {"request_id": request_id},
            )
        self._realtime("status", updated, {"event": "cancelled", "cancelled_by": client_id})

        LogContext(logger, request_id=request_id, client_id=client_id).info(
            f"Request cancelled, {len(to_notify)} professionals notified"
        )
        return updated

    async def complete(self, request_id: str, actor_id: str) -> UrgentRequest:
        request = await self._load(request_id)
        is_client = request.client_id == actor_id
        is_professional = request.assigned_professional_id is not None and request.assigned_professional_id == actor_id
        if not (is_client or is_professional):
            raise NotAuthorizedError("Only the client or the assigned professional can complete the request")

        updated = await self._transition(request, RequestStatus.COMPLETED, completed_at=self.clock())
        await self._track(request_id, request.status, RequestStatus.COMPLETED,
                          "Completed by client" if is_client else "Completed by professional", actor_id)

        other_party = request.assigned_professional_id if is_client else request.client_id
        if other_party:
            await self._notify(
                other_party,
                NOTIFY_COMPLETED,
                "The urgent request was marked as completed",
                {"request_id": request_id, "completed_by": actor_id},
            )
        self._realtime("status", updated, {"event": "completed", "completed_by": actor_id})

        LogContext(logger, request_id=request_id).info("Request completed")
        return updated

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def get_request(self, request_id: str, requester_id: str) -> UrgentRequestView:
        request = await self._load(request_id)
        view = UrgentRequestView(
            request=request,
            candidates=await self.store.list_candidates(request_id),
            assignment=await self.store.get_assignment(request_id),
        )
        if not view.is_participant(requester_id):
            raise NotAuthorizedError("Not a participant of this urgent request")

        view.rejections = await self.store.list_rejections(request_id)
        view.tracking = await self.store.list_tracking(request_id)
        return view

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def expire_unresponsive_candidates(self) -> int:
        """
        Auto-reject candidates that did not answer in time.

        A request whose last open candidate expires gets one retry dispatch.
        Returns the number of candidates expired.
        """
        timeout = self.policy.candidate_response_timeout_seconds
        if timeout <= 0:
            return 0

        stale = await self.store.list_stale_candidates(self.clock() - timedelta(seconds=timeout))
        expired = 0
        for candidate in stale:
            outcome = await self.store.reject_candidate(
                candidate.request_id, candidate.professional_id, REASON_NO_RESPONSE
            )
            if outcome is None:
                continue
            expired += 1
            _, remaining = outcome

            await self._notify(
                candidate.professional_id,
                NOTIFY_EXPIRED,
                "The response time for this urgent request has passed",
                {"request_id": candidate.request_id},
            )
            if remaining == 0:
                await self._schedule(candidate.request_id, is_retry=True)

        if expired:
            AppMetrics.candidates_expired(expired)
            logger.info(f"Candidate expiry: {expired} of {len(stale)} stale candidates expired")
        return expired
