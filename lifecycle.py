"""
Help request lifecycle.

    open --claim--> in_progress --accept--> closed
                        |
                        +--reject--> open

A claim is a conditional update guarded by ``status = open``; exactly one of
several concurrent volunteers gets a matched row. If the owner cannot be
notified afterwards, the claim is undone by a second update guarded by
``status = in_progress`` so a decision the owner made meanwhile is kept.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from pydantic import ValidationError

from models import HelpRequest, RequestStatus, cleared_pending_fields, utcnow
from schemas import ContactForm, PendingContact
from stores import RequestStore

logger = logging.getLogger(__name__)

DEFAULT_VOLUNTEER_NAME = "CareMatch user"


@dataclass(frozen=True)
class Actor:
    id: int
    role: str = "user"
    name: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


class Notifier(Protocol):
    def notify_owner_of_claim(self, owner_email: str, payload: dict) -> bool: ...


class LifecycleError(Exception):
    status_code = 500
    message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        if message is not None:
            self.message = message
        super().__init__(self.message)


class NotAuthenticated(LifecycleError):
    status_code = 401
    message = "Not authenticated."


class RequestNotFound(LifecycleError):
    status_code = 404
    message = "Request not found."


class Forbidden(LifecycleError):
    status_code = 403
    message = "Not allowed."


class InvalidState(LifecycleError):
    status_code = 400
    message = "Request is not pending."


class ClaimConflict(LifecycleError):
    status_code = 409
    message = "This request is pending decision."


class InvalidContact(LifecycleError):
    status_code = 400
    message = "Invalid message."


class NotificationFailure(LifecycleError):
    status_code = 500
    message = "Could not send email. Please try again."


def _contact_error_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if errors and errors[0]["loc"]:
        return f"Invalid {errors[0]['loc'][0]}."
    return InvalidContact.message


class RequestLifecycleService:
    def __init__(self, store: RequestStore, notifier: Notifier):
        self.store = store
        self.notifier = notifier

    def _load(self, request_id: int, actor: Optional[Actor]) -> HelpRequest:
        if actor is None:
            raise NotAuthenticated()
        req = self.store.find_by_id(request_id)
        if req is None:
            raise RequestNotFound()
        return req

    def _load_for_decision(self, request_id: int, actor: Optional[Actor]) -> HelpRequest:
        req = self._load(request_id, actor)
        if req.user_id != actor.id and not actor.is_admin:
            raise Forbidden()
        return req

    def _reload(self, request_id: int) -> HelpRequest:
        req = self.store.find_by_id(request_id)
        if req is None:
            raise RequestNotFound()
        return req

    def claim(
        self, request_id: int, actor: Optional[Actor], form: Optional[ContactForm]
    ) -> HelpRequest:
        """Volunteer contacts the owner of an open request.

        Returns the request as this claim left it. Raises InvalidContact,
        RequestNotFound, InvalidState (closed), Forbidden (own request),
        ClaimConflict (already pending or lost the race) or
        NotificationFailure (claim was rolled back).
        """
        if actor is None:
            raise NotAuthenticated()
        raw = form.model_dump() if form is not None else {}
        try:
            contact = PendingContact.model_validate(raw)
        except ValidationError as exc:
            raise InvalidContact(_contact_error_message(exc)) from exc

        req = self._load(request_id, actor)
        if req.status == RequestStatus.CLOSED:
            raise InvalidState("This request is closed.")
        if req.user_id == actor.id:
            raise Forbidden("You cannot contact your own request.")
        if req.status != RequestStatus.OPEN:
            logger.info("request %s: contact by user %s while pending", request_id, actor.id)
            raise ClaimConflict()

        owner_email = self.store.find_owner_email(req.user_id)
        if not owner_email:
            raise LifecycleError("Request owner email not found.")

        payload = {
            "requestTitle": req.title,
            "requestRegion": req.region,
            "requestCategory": req.category,
            "donorName": contact.name or actor.name or DEFAULT_VOLUNTEER_NAME,
            "donorEmail": contact.email or actor.email or "",
            "donorPhone": contact.phone or "",
            "message": contact.message,
        }
        claim_fields = {
            "status": RequestStatus.IN_PROGRESS.value,
            "pending_volunteer_name": payload["donorName"],
            "pending_volunteer_email": payload["donorEmail"],
            "pending_volunteer_phone": payload["donorPhone"],
            "pending_volunteer_msg": payload["message"],
            "pending_volunteer_at": utcnow(),
        }
        # Taken before the write: once the owner has been mailed the claim
        # has succeeded, whatever happens to the row afterwards.
        claimed_state = {**req.model_dump(), **claim_fields}

        claimed = self.store.conditional_update(
            request_id, RequestStatus.OPEN.value, claim_fields
        )
        if not claimed:
            logger.info("request %s: user %s lost the claim race", request_id, actor.id)
            raise ClaimConflict()
        logger.info("request %s: claimed by user %s", request_id, actor.id)

        try:
            delivered = self.notifier.notify_owner_of_claim(owner_email, payload)
        except Exception as exc:
            logger.exception("request %s: owner notification failed", request_id)
            self._rollback_claim(request_id)
            raise NotificationFailure() from exc
        if delivered is False:
            logger.error("request %s: owner notification was not delivered", request_id)
            self._rollback_claim(request_id)
            raise NotificationFailure()

        return HelpRequest(**claimed_state)

    def _rollback_claim(self, request_id: int) -> None:
        reverted = self.store.conditional_update(
            request_id,
            RequestStatus.IN_PROGRESS.value,
            {"status": RequestStatus.OPEN.value, **cleared_pending_fields()},
        )
        if reverted:
            logger.info("request %s: claim rolled back", request_id)
        else:
            logger.info("request %s: rollback skipped, state already changed", request_id)

    def accept(self, request_id: int, actor: Optional[Actor]) -> HelpRequest:
        """Owner or admin accepts the pending volunteer; the request closes."""
        return self._decide(
            request_id,
            actor,
            {"status": RequestStatus.CLOSED.value, **cleared_pending_fields()},
        )

    def reject(self, request_id: int, actor: Optional[Actor]) -> HelpRequest:
        """Owner or admin turns the pending volunteer down; the request reopens."""
        return self._decide(
            request_id,
            actor,
            {"status": RequestStatus.OPEN.value, **cleared_pending_fields()},
        )

    def _decide(self, request_id: int, actor: Optional[Actor], fields: dict) -> HelpRequest:
        req = self._load_for_decision(request_id, actor)
        if req.status != RequestStatus.IN_PROGRESS:
            raise InvalidState()
        if not self.store.conditional_update(
            request_id, RequestStatus.IN_PROGRESS.value, fields
        ):
            # Someone else decided (or rolled back) between our read and write.
            raise InvalidState()
        logger.info(
            "request %s: moved to %s by user %s", request_id, fields["status"], actor.id
        )
        return self._reload(request_id)

    def close(self, request_id: int, actor: Optional[Actor]) -> HelpRequest:
        """Owner or admin soft-deletes a request from any non-closed state."""
        req = self._load_for_decision(request_id, actor)
        if req.status == RequestStatus.CLOSED:
            raise InvalidState("This request is closed.")
        if not self.store.conditional_update(
            request_id,
            req.status,
            {"status": RequestStatus.CLOSED.value, **cleared_pending_fields()},
        ):
            raise ClaimConflict("Request changed, please refresh.")
        logger.info("request %s: closed by user %s", request_id, actor.id)
        return self._reload(request_id)
