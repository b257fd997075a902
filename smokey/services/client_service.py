"""
Client Service: contract intake.

A client is created once with immutable contract terms; its timeline is
instantiated in the same transaction so the kickoff plan exists from the
start.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone

from smokey.core.exceptions import ValidationError
from smokey.models.audit import write_audit
from smokey.models.client import MAX_CONTRACT_MONTHS, Client, parse_tier
from smokey.repository import SmokeyRepository
from smokey.services.timeline_service import TimelineScheduler
from smokey.utils.helpers import add_months, parse_date, parse_int

logger = logging.getLogger(__name__)


def validate_client_payload(data: dict, today: date | None = None) -> dict:
    """Check a camelCase client payload; returns the model kwargs."""
    errors = {}
    name = (data.get("name") or "").strip()
    if not name:
        errors["name"] = "required"
    url = (data.get("canonicalUrl") or "").strip()
    if not url:
        errors["canonicalUrl"] = "required"
    elif not url.startswith(("http://", "https://")):
        errors["canonicalUrl"] = "must be an http(s) URL"

    start = parse_date(data.get("contractStartDate"))
    if start is None:
        errors["contractStartDate"] = "required (YYYY-MM-DD)"

    length = data.get("contractLengthMonths", 12)
    length = parse_int(length)
    if length is None or not 1 <= length <= MAX_CONTRACT_MONTHS:
        errors["contractLengthMonths"] = f"must be between 1 and {MAX_CONTRACT_MONTHS}"

    try:
        tier = parse_tier(data.get("planTier"))
    except ValueError:
        errors["planTier"] = "must be starter, growth or enterprise"
        tier = None

    if start is not None and "contractLengthMonths" not in errors:
        today = today or datetime.now(timezone.utc).date()
        if add_months(start, length) <= today:
            errors["contractStartDate"] = "contract has already ended"

    if errors:
        raise ValidationError("Invalid client payload", details=errors)
    return {
        "name": name,
        "canonical_url": url,
        "contract_start_date": start,
        "contract_length_months": length,
        "plan_tier": tier.value,
    }


class ClientService:
    def __init__(self, repo: SmokeyRepository, timeline: TimelineScheduler) -> None:
        self.repo = repo
        self.timeline = timeline

    def create_client(self, data: dict) -> tuple[Client, list[dict]]:
        fields = validate_client_payload(data)
        client = Client(**fields)
        self.repo.add(client)
        self.repo.flush()
        write_audit(entity_type="client", entity_id=client.id, action="create",
                    client_id=client.id,
                    diff={"plan_tier": client.plan_tier,
                          "contract_start_date": client.contract_start_date,
                          "contract_length_months": client.contract_length_months})
        logger.info("Client created: id=%s tier=%s start=%s months=%s",
                    client.id, client.plan_tier, client.contract_start_date,
                    client.contract_length_months)
        timeline = self.timeline.instantiate_timeline(client.id)
        return client, timeline

    def contract_summary(self, client: Client, today: date | None = None) -> dict:
        d = client.to_dict()
        d["current_month"] = client.contract_month(today)
        d["wip_limit"] = client.wip_limit
        return d
