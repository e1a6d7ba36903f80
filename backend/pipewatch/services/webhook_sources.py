"""
Per-source webhook contracts.

Each source name maps to one SourceContract: a pydantic payload schema, the
authentication method the source uses, the destination it relays to, and an
optional function that derives warnings and stage data from a valid payload.
Sources without a contract fall back to a generic one.
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

AuthMethod = Literal["token", "signature", "bearer", "none"]

CONTENT_PLATFORM = "content-platform"
CONTENT_PLATFORM_BATCH = "content-platform-batch"
CI = "ci"
CONTROL_PLANE = "control-plane"

KNOWN_CONTENT_EVENTS = frozenset({
    "campaign.sent",
    "campaign.scheduled",
    "subscriber.created",
    "subscriber.updated",
    "subscriber.unsubscribed",
    "subscriber.added_to_group",
    "subscriber.removed_from_group",
    "subscriber.bounced",
    "subscriber.complained",
})

# Content events that lead to a site rebuild.
PUBLISHING_EVENTS = frozenset({"campaign.sent", "subscriber.created", "subscriber.updated"})


# ── Payload schemas ──────────────────────────────────────────────────────────

class CampaignInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | int | None = None
    name: str | None = None
    subject: str | None = None


class CampaignEventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    campaign: CampaignInfo | None = None


class ContentPlatformPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    event: str = Field(min_length=1)
    data: CampaignEventData
    token: str | None = None


class SubscriberEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str = Field(min_length=1)
    data: dict[str, Any]


class ContentPlatformBatchPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    events: list[SubscriberEvent] = Field(min_length=1)


class CIDispatchPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    ref: str | None = None
    workflow_id: str | int | None = None
    inputs: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _require_target(self):
        if not self.ref and self.workflow_id is None:
            raise ValueError("payload must include ref or workflow_id")
        return self


# ── Contract ─────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ContractResult:
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    stage_data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SourceContract:
    name: str
    destination: str
    auth_method: AuthMethod
    schema: type[BaseModel] | None = None
    inspect: Callable[[Any, dict[str, str]], tuple[list[str], dict[str, Any]]] | None = None
    relays_to_ci: bool = False

    def check(self, payload: Any, headers: dict[str, str]) -> ContractResult:
        """Validate ``payload`` against the schema, then collect warnings and stage data."""
        errors: list[str] = []
        if self.schema is not None:
            if not isinstance(payload, dict):
                return ContractResult(errors=["Payload must be a JSON object"])
            try:
                self.schema.model_validate(payload)
            except ValidationError as exc:
                errors = [_format_error(err) for err in exc.errors()]
                return ContractResult(errors=errors)

        warnings: list[str] = []
        stage_data: dict[str, Any] = {}
        if self.inspect is not None:
            warnings, stage_data = self.inspect(payload, headers)
        return ContractResult(errors=errors, warnings=warnings, stage_data=stage_data)


def _format_error(err: dict) -> str:
    location = ".".join(str(p) for p in err.get("loc", ())) or "payload"
    return f"{location}: {err.get('msg', 'invalid')}"


# ── Per-source inspection ────────────────────────────────────────────────────

def _inspect_content_event(payload: dict, headers: dict[str, str]):
    event = payload["event"]
    campaign = (payload.get("data") or {}).get("campaign") or {}
    warnings = []
    if event not in KNOWN_CONTENT_EVENTS:
        warnings.append(f"Unknown event type: {event}")
    return warnings, {
        "event": event,
        "campaign_id": campaign.get("id"),
        "campaign_name": campaign.get("name"),
        "triggers_publish": event in PUBLISHING_EVENTS,
    }


def _inspect_content_batch(payload: dict, headers: dict[str, str]):
    types = [e["type"] for e in payload["events"]]
    warnings = [f"Unknown event type: {t}" for t in types if t not in KNOWN_CONTENT_EVENTS]
    return warnings, {
        "event_count": len(types),
        "event_types": sorted(set(types)),
        "triggers_publish": any(t in PUBLISHING_EVENTS for t in types),
    }


def _inspect_ci(payload: dict, headers: dict[str, str]):
    event = headers.get("x-github-event", "")
    ref = payload.get("ref")
    expects_workflow = (event == "push" and ref == "refs/heads/main") or event == "workflow_dispatch"
    return [], {
        "event": event or None,
        "ref": ref,
        "workflow_id": payload.get("workflow_id"),
        "expects_workflow": expects_workflow,
    }


def _inspect_control_plane(payload: Any, headers: dict[str, str]):
    warnings = []
    if not isinstance(payload, dict) or not (payload.get("body") or payload.get("query")):
        warnings.append("Relay call carries neither body nor query")
    return warnings, {}


def _inspect_generic(payload: Any, headers: dict[str, str]):
    if not payload:
        return ["Empty payload"], {}
    return [], {}


CONTRACTS: dict[str, SourceContract] = {
    CONTENT_PLATFORM: SourceContract(
        name=CONTENT_PLATFORM,
        destination=CONTROL_PLANE,
        auth_method="token",
        schema=ContentPlatformPayload,
        inspect=_inspect_content_event,
        relays_to_ci=True,
    ),
    CONTENT_PLATFORM_BATCH: SourceContract(
        name=CONTENT_PLATFORM_BATCH,
        destination=CONTROL_PLANE,
        auth_method="token",
        schema=ContentPlatformBatchPayload,
        inspect=_inspect_content_batch,
    ),
    CI: SourceContract(
        name=CI,
        destination="site",
        auth_method="signature",
        schema=CIDispatchPayload,
        inspect=_inspect_ci,
    ),
    CONTROL_PLANE: SourceContract(
        name=CONTROL_PLANE,
        destination=CI,
        auth_method="bearer",
        inspect=_inspect_control_plane,
    ),
}


def get_contract(source: str) -> SourceContract:
    contract = CONTRACTS.get(source)
    if contract is not None:
        return contract
    return SourceContract(name=source, destination="unknown", auth_method="none", inspect=_inspect_generic)
