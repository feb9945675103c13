"""
Routing target resolution.

Given a tenant, a dialed identifier and an instant, load the addressed entity
and turn its typed target into a concrete RoutingDecision. Nested references
(schedule actions, forwards, fallbacks, aliases) are followed up to
``max_routing_depth`` levels; every loaded entity must belong to the tenant
being routed.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from urllib.parse import urlencode

from callrouting.routing.config import RoutingConfig
from callrouting.routing.decisions import (
    ConferenceDecision,
    DialDecision,
    DialEndpoint,
    HangupDecision,
    MenuDecision,
    RoutingDecision,
    ServiceDecision,
)
from callrouting.routing.distributor import DistributionPlan, RingGroupDistributor, member_endpoint
from callrouting.routing.ivr import IvrTurnCounter
from callrouting.routing.models import ExtensionType
from callrouting.routing.numbers import is_e164, is_extension_number, is_transport_uri
from callrouting.routing.repository import RoutingRepositoryProtocol
from callrouting.routing.ring_groups import RingGroupMembershipService
from callrouting.routing.schedule import ScheduleEvaluator
from callrouting.routing.schemas import ExtensionSnapshot, IvrMenuSnapshot, RingGroupSnapshot
from callrouting.routing.targets import (
    ConferenceTarget,
    ExtensionTarget,
    ForwardTarget,
    HangupTarget,
    IvrMenuTarget,
    RingGroupTarget,
    RoutingTarget,
    ScheduleTarget,
    ServiceTarget,
)
from callrouting.shared.exceptions import (
    ConfigurationError,
    LockTimeout,
    NotFound,
    RoutingError,
    Unavailable,
)
from callrouting.shared.logging import get_logger

logger = get_logger(__name__)

CLOSED_MESSAGE = "We are currently closed. Please call back during business hours."
NO_AGENTS_MESSAGE = "No agents are available to take your call."
INVALID_OPTION_MESSAGE = "Invalid menu option, please try again."
DEFAULT_MENU_PROMPT = "Please enter the number for your desired option."
MENU_FAILOVER_MESSAGE = "We did not receive a valid selection."
OUTBOUND_REFUSED_MESSAGE = "Outbound dialing is not permitted from this extension."
SECURITY_VIOLATION_MESSAGE = "Security violation, no outbound dialing allowed."

_CALLER_TYPES = (ExtensionType.USER, ExtensionType.AI_ASSISTANT)
_ANSWERED_STATUSES = frozenset({"answered", "completed"})


class CallDirection(str, Enum):
    INBOUND = "inbound"
    INTERNAL = "internal"
    INVALID = "invalid"


@dataclass(frozen=True)
class CallContext:
    """One routing request."""

    organization_id: int
    call_id: str
    caller: str
    dialed: str
    direction: CallDirection
    instant: datetime


class RoutingTargetResolver:
    """Resolves dialed identifiers and typed targets into decisions."""

    def __init__(
        self,
        repository: RoutingRepositoryProtocol,
        ring_groups: RingGroupMembershipService,
        distributor: RingGroupDistributor,
        evaluator: ScheduleEvaluator,
        config: RoutingConfig,
        callback_base_url: str,
        ivr_turns: IvrTurnCounter | None = None,
    ) -> None:
        self._repository = repository
        self._ring_groups = ring_groups
        self._distributor = distributor
        self._evaluator = evaluator
        self._config = config
        self._callback_base_url = callback_base_url.rstrip("/")
        self._ivr_turns = ivr_turns

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def classify(self, caller: str, dialed: str) -> CallDirection:
        """Classify a call when the platform did not state its direction."""
        from_extension = await self._repository.get_extension(caller) if caller else None
        if from_extension is not None and (
            from_extension.type not in _CALLER_TYPES or not from_extension.is_active
        ):
            from_extension = None

        if from_extension is not None:
            to_extension = await self._repository.get_extension(dialed) if dialed else None
            if (to_extension is not None and to_extension.is_active) or is_e164(dialed):
                return CallDirection.INTERNAL
            return CallDirection.INVALID

        did = await self._repository.get_did(dialed) if dialed else None
        if did is not None and did.is_active:
            return CallDirection.INBOUND
        return CallDirection.INVALID

    async def resolve(self, ctx: CallContext) -> RoutingDecision:
        """Resolve a real-time call.

        Raises:
            RoutingError: NotFound / Unavailable / ConfigurationError.
        """
        logger.info(
            "Resolving call",
            extra={
                "call_id": ctx.call_id,
                "organization_id": ctx.organization_id,
                "direction": ctx.direction.value,
                "dialed": ctx.dialed,
            },
        )

        match ctx.direction:
            case CallDirection.INBOUND:
                did = await self._repository.get_did(ctx.dialed)
                if did is None or not did.is_active:
                    raise NotFound("Destination not found", details={"dialed": ctx.dialed})
                self._check_tenant("did", did.id, did.organization_id)
                return await self.resolve_target(did.target, ctx, depth=0)

            case CallDirection.INTERNAL:
                if is_e164(ctx.dialed):
                    return HangupDecision(message=OUTBOUND_REFUSED_MESSAGE, reason="outbound_refused")
                extension = await self._repository.get_extension(ctx.dialed)
                if extension is None:
                    raise NotFound("Destination not found", details={"dialed": ctx.dialed})
                return await self._resolve_extension(extension, ctx, depth=0)

            case CallDirection.INVALID:
                if is_e164(ctx.dialed):
                    logger.warning(
                        "External caller attempted to dial an external number",
                        extra={
                            "call_id": ctx.call_id,
                            "organization_id": ctx.organization_id,
                            "reason": "security_violation_e164",
                        },
                    )
                    return HangupDecision(
                        message=SECURITY_VIOLATION_MESSAGE,
                        reason="security_violation",
                    )
                return HangupDecision(reason="invalid_call")

        raise ConfigurationError(f"Unsupported call direction: {ctx.direction}")

    async def resolve_target(self, target: RoutingTarget, ctx: CallContext, depth: int) -> RoutingDecision:
        """Resolve one typed target; ``depth`` counts followed references."""
        if depth > self._config.max_routing_depth:
            raise ConfigurationError(
                "Routing depth exceeded; check for cyclic references",
                details={"depth": depth, "target": target.kind},
            )

        match target:
            case ExtensionTarget(extension_id=extension_id):
                extension = await self._repository.get_extension_by_id(extension_id)
                if extension is None:
                    raise await self._missing("extension", extension_id)
                return await self._resolve_extension(extension, ctx, depth)

            case RingGroupTarget(ring_group_id=ring_group_id):
                return await self._resolve_ring_group(ring_group_id, ctx, depth)

            case ScheduleTarget(schedule_id=schedule_id):
                return await self._resolve_schedule(schedule_id, ctx, depth)

            case ConferenceTarget(conference_room_id=room_id):
                return await self._resolve_conference(room_id)

            case IvrMenuTarget(ivr_menu_id=menu_id):
                menu = await self._load_menu(menu_id)
                return self._menu_decision(menu)

            case ServiceTarget():
                return self._resolve_service(target, None)

            case ForwardTarget(forward_to=forward_to):
                return await self._resolve_forward(forward_to, ctx, depth)

            case HangupTarget(message=message):
                return HangupDecision(message=message, reason="configured_hangup")

        raise ConfigurationError(f"Unsupported routing target: {target!r}")

    async def resolve_menu_input(
        self,
        ctx: CallContext,
        menu_id: int,
        digits: str,
    ) -> RoutingDecision:
        """Route collected IVR digits."""
        menu = await self._load_menu(menu_id)
        option = menu.option_for(digits) if digits else None

        if option is not None:
            if self._ivr_turns is not None:
                await self._ivr_turns.reset(ctx.organization_id, ctx.call_id, menu.id)
            logger.info(
                "IVR option selected",
                extra={"call_id": ctx.call_id, "ivr_menu_id": menu.id, "digits": digits},
            )
            try:
                return await self.resolve_target(option.target, ctx, depth=1)
            except (Unavailable, ConfigurationError) as e:
                if menu.failover is None:
                    raise
                logger.warning(
                    "IVR option unavailable; using menu failover",
                    extra={
                        "call_id": ctx.call_id,
                        "ivr_menu_id": menu.id,
                        "digits": digits,
                        "error": e.message,
                        "fallback": menu.failover.kind,
                    },
                )
                return await self.resolve_target(menu.failover, ctx, depth=1)

        turns = 1
        if self._ivr_turns is not None:
            turns = await self._ivr_turns.record_failure(ctx.organization_id, ctx.call_id, menu.id)

        logger.info(
            "IVR input not matched",
            extra={
                "call_id": ctx.call_id,
                "ivr_menu_id": menu.id,
                "turns": turns,
                "max_turns": menu.max_turns,
            },
        )

        if turns >= menu.max_turns:
            if menu.failover is None:
                return HangupDecision(message=MENU_FAILOVER_MESSAGE, reason="ivr_max_turns")
            return await self.resolve_target(menu.failover, ctx, depth=1)

        return self._menu_decision(menu, preface=INVALID_OPTION_MESSAGE)

    async def continue_ring_group(
        self,
        ctx: CallContext,
        ring_group_id: int,
        order: Sequence[str],
        offset: int,
        dial_status: str | None,
    ) -> RoutingDecision:
        """Advance a sequential / round-robin ring after one attempt finished."""
        if dial_status and dial_status.lower() in _ANSWERED_STATUSES:
            return HangupDecision(reason="answered")

        try:
            group = await self._ring_groups.read(ring_group_id)
        except LockTimeout:
            group = await self._ring_groups.read_unlocked(ring_group_id)
            if group is None:
                raise await self._missing("ring_group", ring_group_id)
            return await self._fallback(group, ctx, depth=1, reason="lock_timeout")

        if group is None:
            raise await self._missing("ring_group", ring_group_id)
        self._check_tenant("ring_group", group.id, group.organization_id)

        try:
            members = self._distributor.active_members(group)
        except (Unavailable, ConfigurationError) as e:
            return await self._distribution_failed(group, ctx, 1, e)

        active = {m.extension_number: m for m in members}
        max_attempts = len(order) * max(group.ring_turns, 1)
        next_offset = offset + 1

        while order and next_offset < max_attempts:
            member = active.get(order[next_offset % len(order)])
            if member is not None:
                return DialDecision(
                    endpoints=(member_endpoint(member),),
                    timeout=group.timeout,
                    caller_id=ctx.caller or None,
                    action_url=self._ring_group_callback(group.id, order, next_offset),
                    ring_group_id=group.id,
                )
            next_offset += 1

        logger.info(
            "Ring group exhausted",
            extra={"call_id": ctx.call_id, "ring_group_id": group.id, "attempts": next_offset},
        )
        return await self._fallback(group, ctx, depth=1, reason="exhausted")

    # ------------------------------------------------------------------
    # Per-kind resolution
    # ------------------------------------------------------------------

    async def _resolve_extension(
        self,
        extension: ExtensionSnapshot,
        ctx: CallContext,
        depth: int,
    ) -> RoutingDecision:
        self._check_tenant("extension", extension.id, extension.organization_id)
        if not extension.is_active:
            raise Unavailable(
                f"Extension {extension.extension_number} is not active",
                details={"extension_id": extension.id},
            )

        match extension.type:
            case ExtensionType.USER:
                if not extension.sip_uri or not extension.sip_uri.strip():
                    raise Unavailable(
                        f"Extension {extension.extension_number} has no SIP address",
                        details={"extension_id": extension.id},
                    )
                return DialDecision(
                    endpoints=(DialEndpoint.sip(extension.sip_uri),),
                    timeout=self._config.default_dial_timeout,
                    caller_id=ctx.caller or None,
                )

            case ExtensionType.AI_ASSISTANT | ExtensionType.IVR | ExtensionType.CUSTOM_LOGIC:
                if isinstance(extension.target, ServiceTarget):
                    return self._resolve_service(extension.target, extension.extension_number)
                return await self._resolve_alias(extension, ctx, depth)

            case ExtensionType.RING_GROUP | ExtensionType.CONFERENCE | ExtensionType.FORWARD:
                return await self._resolve_alias(extension, ctx, depth)

        raise ConfigurationError(f"Unsupported extension type: {extension.type}")

    async def _resolve_alias(
        self,
        extension: ExtensionSnapshot,
        ctx: CallContext,
        depth: int,
    ) -> RoutingDecision:
        if extension.target is None:
            raise ConfigurationError(
                f"Extension {extension.extension_number} has no routing configuration",
                details={"extension_id": extension.id},
            )
        return await self.resolve_target(extension.target, ctx, depth + 1)

    def _resolve_service(self, target: ServiceTarget, extension_number: str | None) -> ServiceDecision:
        if not target.service_url or not target.service_url.strip():
            raise Unavailable(
                "Service provider not configured",
                details={"provider": target.provider, "extension_number": extension_number},
            )
        return ServiceDecision(
            provider=target.provider,
            service_url=target.service_url.strip(),
            timeout=self._config.service_dial_timeout,
            token=target.token,
            params=dict(target.params),
            extension_number=extension_number,
        )

    async def _resolve_forward(self, forward_to: str, ctx: CallContext, depth: int) -> RoutingDecision:
        forward_to = forward_to.strip()
        if not forward_to:
            raise Unavailable("Forward destination not configured")

        if is_extension_number(forward_to):
            extension = await self._repository.get_extension(forward_to)
            if extension is None or not extension.is_active:
                raise Unavailable(
                    f"Target extension {forward_to} not found or inactive",
                    details={"forward_to": forward_to},
                )
            return await self._resolve_extension(extension, ctx, depth + 1)

        if is_e164(forward_to):
            return DialDecision(
                endpoints=(DialEndpoint.number(forward_to),),
                timeout=self._config.default_dial_timeout,
                caller_id=ctx.caller or None,
            )

        if is_transport_uri(forward_to):
            return DialDecision(
                endpoints=(DialEndpoint.sip(forward_to),),
                timeout=self._config.default_dial_timeout,
                caller_id=ctx.caller or None,
            )

        raise Unavailable("Forward destination is not routable", details={"forward_to": forward_to})

    async def _resolve_ring_group(self, ring_group_id: int, ctx: CallContext, depth: int) -> RoutingDecision:
        try:
            group = await self._ring_groups.read(ring_group_id)
        except LockTimeout:
            group = await self._ring_groups.read_unlocked(ring_group_id)
            if group is None:
                raise await self._missing("ring_group", ring_group_id)
            self._check_tenant("ring_group", group.id, group.organization_id)
            logger.warning(
                "Ring group locked; using fallback",
                extra={"call_id": ctx.call_id, "ring_group_id": ring_group_id},
            )
            return await self._fallback(group, ctx, depth, reason="lock_timeout")

        if group is None:
            raise await self._missing("ring_group", ring_group_id)
        self._check_tenant("ring_group", group.id, group.organization_id)

        if not group.is_active:
            return await self._fallback(group, ctx, depth, reason="inactive")

        try:
            plan = await self._distributor.distribute(group, call_id=ctx.call_id)
        except (Unavailable, ConfigurationError) as e:
            return await self._distribution_failed(group, ctx, depth, e)
        if plan.is_empty:
            return await self._fallback(group, ctx, depth, reason="no_active_members")
        return self._plan_decision(plan, ctx)

    def _plan_decision(self, plan: DistributionPlan, ctx: CallContext) -> DialDecision:
        if plan.parallel:
            return DialDecision(
                endpoints=plan.endpoints(),
                timeout=plan.timeout,
                caller_id=ctx.caller or None,
                ring_group_id=plan.ring_group_id,
            )
        first = plan.members[0]
        return DialDecision(
            endpoints=(member_endpoint(first),),
            timeout=plan.timeout,
            caller_id=ctx.caller or None,
            action_url=self._ring_group_callback(plan.ring_group_id, plan.order, 0),
            ring_group_id=plan.ring_group_id,
        )

    async def _distribution_failed(
        self,
        group: RingGroupSnapshot,
        ctx: CallContext,
        depth: int,
        error: Unavailable | ConfigurationError,
    ) -> RoutingDecision:
        """Use the group fallback for a broken group; re-raise when it has none."""
        if group.fallback is None:
            raise error
        logger.warning(
            "Ring group distribution failed; using fallback",
            extra={"call_id": ctx.call_id, "ring_group_id": group.id, "error": error.message},
        )
        return await self._fallback(group, ctx, depth, reason="distribution_error")

    async def _fallback(
        self,
        group: RingGroupSnapshot,
        ctx: CallContext,
        depth: int,
        reason: str,
    ) -> RoutingDecision:
        logger.info(
            "Applying ring group fallback",
            extra={
                "call_id": ctx.call_id,
                "ring_group_id": group.id,
                "reason": reason,
                "fallback": group.fallback.kind if group.fallback is not None else None,
            },
        )
        if group.fallback is None:
            raise Unavailable(NO_AGENTS_MESSAGE, details={"ring_group_id": group.id, "reason": reason})
        if isinstance(group.fallback, HangupTarget):
            return HangupDecision(
                message=group.fallback.message or NO_AGENTS_MESSAGE,
                reason="ring_group_fallback",
            )
        return await self.resolve_target(group.fallback, ctx, depth + 1)

    async def _resolve_schedule(self, schedule_id: int, ctx: CallContext, depth: int) -> RoutingDecision:
        schedule = await self._repository.get_schedule(schedule_id)
        if schedule is None:
            raise await self._missing("business_hours", schedule_id)
        self._check_tenant("business_hours", schedule.id, schedule.organization_id)

        evaluation = self._evaluator.evaluate(schedule, ctx.instant)
        logger.info(
            "Business hours evaluated",
            extra={
                "call_id": ctx.call_id,
                "schedule_id": schedule.id,
                "status": evaluation.status.value,
                "reason": evaluation.reason,
                "exception_applied": evaluation.exception_applied,
                "next_transition": evaluation.next_transition,
            },
        )

        if evaluation.is_open:
            if schedule.open_action is None:
                raise ConfigurationError(
                    "Schedule has no open-hours action",
                    details={"schedule_id": schedule.id},
                )
            return await self.resolve_target(schedule.open_action, ctx, depth + 1)

        if schedule.closed_action is None:
            return HangupDecision(message=CLOSED_MESSAGE, reason="closed")
        return await self.resolve_target(schedule.closed_action, ctx, depth + 1)

    async def _resolve_conference(self, room_id: int) -> ConferenceDecision:
        room = await self._repository.get_conference_room(room_id)
        if room is None:
            raise await self._missing("conference_room", room_id)
        self._check_tenant("conference_room", room.id, room.organization_id)
        if not room.is_active:
            raise Unavailable("Conference room is closed", details={"conference_room_id": room.id})
        return ConferenceDecision(
            identifier=room.identifier,
            max_participants=room.max_participants,
            muted=room.mute_on_entry,
            beep=room.announce_join_leave,
        )

    async def _load_menu(self, menu_id: int) -> IvrMenuSnapshot:
        menu = await self._repository.get_ivr_menu(menu_id)
        if menu is None:
            raise await self._missing("ivr_menu", menu_id)
        self._check_tenant("ivr_menu", menu.id, menu.organization_id)
        if not menu.is_active:
            raise Unavailable("IVR menu is not active", details={"ivr_menu_id": menu.id})
        return menu

    def _menu_decision(self, menu: IvrMenuSnapshot, preface: str | None = None) -> MenuDecision:
        prompt_text = None if menu.audio_url else (menu.tts_text or DEFAULT_MENU_PROMPT)
        return MenuDecision(
            menu_id=menu.id,
            action_url=self._callback("/voice/ivr", {"menu_id": menu.id}),
            timeout=self._config.ivr_gather_timeout,
            max_digits=self._config.ivr_max_digits,
            prompt_text=prompt_text,
            prompt_voice=menu.tts_voice,
            audio_url=menu.audio_url,
            preface=preface,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_tenant(self, kind: str, entity_id: int, organization_id: int) -> None:
        tenant = self._repository.organization_id
        if organization_id != tenant:
            logger.error(
                "Cross-tenant routing reference",
                extra={"kind": kind, "entity_id": entity_id, "organization_id": tenant},
            )
            raise ConfigurationError(
                f"{kind} {entity_id} belongs to another organization",
                details={"kind": kind, "entity_id": entity_id},
            )

    async def _missing(self, kind: str, entity_id: int) -> RoutingError:
        owner = await self._repository.reference_owner(kind, entity_id)
        tenant = self._repository.organization_id
        if owner is not None and owner != tenant:
            logger.error(
                "Cross-tenant routing reference",
                extra={"kind": kind, "entity_id": entity_id, "organization_id": tenant},
            )
            return ConfigurationError(
                f"{kind} {entity_id} belongs to another organization",
                details={"kind": kind, "entity_id": entity_id},
            )
        return NotFound(f"{kind} {entity_id} not found", details={"kind": kind, "entity_id": entity_id})

    def _callback(self, path: str, params: dict[str, object]) -> str:
        return f"{self._callback_base_url}{path}?{urlencode(params)}"

    def _ring_group_callback(self, ring_group_id: int, order: Sequence[str], offset: int) -> str:
        return self._callback(
            "/voice/ring-group-callback",
            {"ring_group_id": ring_group_id, "offset": offset, "order": ",".join(order)},
        )


__all__ = [
    "CallContext",
    "CallDirection",
    "RoutingTargetResolver",
]
