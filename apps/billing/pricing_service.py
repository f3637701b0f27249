"""
Pricing rule selection for Ledgerline Platform
Finds the applicable, currently effective rules for a usage event and keeps
rule bookkeeping (applications, revenue, versions, change history).
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import Any

from django.core.exceptions import ValidationError
from django.db import IntegrityError, transaction
from django.db.models import F, Max, Q
from django.forms.models import model_to_dict

from apps.audit.services import AuditService
from apps.common.types import Err, Ok, Result

from . import config
from .interfaces import ClientAttributes, ClientDirectory, Clock, CustomerDirectory, SystemClock
from .pricing_models import PricingRule, PricingRuleApplication, UsageTier
from .usage_exceptions import NoApplicableRule

logger = logging.getLogger(__name__)

# Fields that bookkeeping owns; rule edits may not touch them
PROTECTED_RULE_FIELDS = frozenset(
    {
        "id",
        "code",
        "version",
        "superseded_by",
        "total_applications",
        "total_revenue_generated",
        "last_applied_at",
        "change_history",
        "created_at",
        "updated_at",
        "created_by",
    }
)


def _actor_type(actor: Any | None) -> str:
    return "system" if actor is None else "user"


def _diff(rule: PricingRule, changes: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    diff: dict[str, dict[str, Any]] = {}
    for field_name, new_value in changes.items():
        old_value = getattr(rule, f"{field_name}_id", None) if field_name in ("customer",) else getattr(rule, field_name)
        if field_name == "customer":
            new_value = getattr(new_value, "pk", new_value)
        if old_value != new_value:
            diff[field_name] = {"old": _jsonable(old_value), "new": _jsonable(new_value)}
    return diff


def _jsonable(value: Any) -> Any:
    if isinstance(value, (Decimal, datetime)):
        return str(value) if isinstance(value, Decimal) else value.isoformat()
    if hasattr(value, "pk"):
        return str(value.pk)
    return value


class PricingRuleSelector:
    """
    💰 Selects governing pricing rules for usage events.

    Candidate set: global rules, the client's own rules, rules of contracts the
    client belongs to, and group rules whose criteria match the client. The set
    is filtered to the service type and to rules effective at the event time,
    then ordered by ``rule_priority`` ascending with the newest rule first on ties.
    """

    def __init__(self, directory: ClientDirectory | None = None, clock: Clock | None = None) -> None:
        self.clock = clock or SystemClock()
        self.directory = directory or CustomerDirectory(self.clock)

    # ---------------------------------------------------------------------------
    # Selection
    # ---------------------------------------------------------------------------

    def candidate_rules(
        self,
        client_id: Any,
        service_type: str | None,
        timestamp: datetime | None = None,
        scope_criteria: Mapping[str, Any] | None = None,
        usage_type: str | None = None,
    ) -> list[PricingRule]:
        """
        Ordered applicable rules.

        ``scope_criteria`` overrides client directory attributes for criteria
        matching (e.g. ``{"tags": ["partner"]}``) and may pin contract rules to
        one ``contract_reference``.
        """
        at = timestamp or self.clock.now()
        criteria_overrides = dict(scope_criteria or {})
        pinned_contract = criteria_overrides.pop("contract_reference", None)

        queryset = (
            PricingRule.objects.filter(is_active=True, approval_status="approved", effective_date__lte=at)
            .filter(Q(expiry_date__isnull=True) | Q(expiry_date__gte=at))
            .filter(
                Q(scope="global")
                | Q(scope="client", customer_id=client_id)
                | Q(scope="contract")
                | Q(scope="group")
            )
        )
        if usage_type:
            queryset = queryset.filter(usage_type=usage_type)

        attributes: ClientAttributes | None = None
        attributes_loaded = False
        contract_membership: dict[str, bool] = {}
        candidates: list[PricingRule] = []

        for rule in queryset:
            if not rule.applies_to_service_type(service_type) or not rule.is_effective(at):
                continue

            if rule.scope == "contract":
                if pinned_contract and rule.contract_reference != pinned_contract:
                    continue
                if rule.contract_reference not in contract_membership:
                    contract_membership[rule.contract_reference] = self.directory.belongs_to_contract(
                        client_id, rule.contract_reference
                    )
                if not contract_membership[rule.contract_reference]:
                    continue

            elif rule.scope == "group":
                if not attributes_loaded:
                    attributes = self._client_attributes(client_id, criteria_overrides)
                    attributes_loaded = True
                if attributes is None or not rule.criteria.matches(attributes):
                    continue

            candidates.append(rule)

        # Newest first, then stable sort by priority keeps newest-first within ties
        candidates.sort(key=lambda rule: rule.created_at, reverse=True)
        candidates.sort(key=lambda rule: rule.rule_priority)

        logger.debug(
            f"💰 [Pricing] {len(candidates)} candidate rule(s) for client {client_id} "
            f"service '{service_type}' at {at.isoformat()}"
        )
        return candidates

    def select_rule(
        self,
        client_id: Any,
        service_type: str | None,
        timestamp: datetime | None = None,
        scope_criteria: Mapping[str, Any] | None = None,
        usage_type: str | None = None,
    ) -> PricingRule:
        """Governing rule for the event; raises NoApplicableRule when none matches"""
        candidates = self.candidate_rules(client_id, service_type, timestamp, scope_criteria, usage_type)
        if not candidates:
            raise NoApplicableRule(client_id, service_type or "")
        return candidates[0]

    def layered_rules(
        self,
        client_id: Any,
        service_type: str | None,
        timestamp: datetime | None = None,
        scope_criteria: Mapping[str, Any] | None = None,
        usage_type: str | None = None,
    ) -> list[PricingRule]:
        """Candidates grouped by layer in ``config.PRICING_LAYER_ORDER``, selector order within a layer"""
        candidates = self.candidate_rules(client_id, service_type, timestamp, scope_criteria, usage_type)
        layer_rank = {layer: index for index, layer in enumerate(config.PRICING_LAYER_ORDER)}
        return sorted(candidates, key=lambda rule: layer_rank.get(rule.layer, len(layer_rank)))

    def select_layers(
        self,
        client_id: Any,
        service_type: str | None,
        timestamp: datetime | None = None,
        scope_criteria: Mapping[str, Any] | None = None,
        usage_type: str | None = None,
    ) -> list[PricingRule]:
        """
        Leading rule of each layer, in layer order. The first entry governs;
        raises NoApplicableRule when no rule matches at all.
        """
        heads: list[PricingRule] = []
        seen: set[str] = set()
        for rule in self.layered_rules(client_id, service_type, timestamp, scope_criteria, usage_type):
            if rule.layer not in seen:
                seen.add(rule.layer)
                heads.append(rule)
        if not heads:
            raise NoApplicableRule(client_id, service_type or "")
        return heads

    def _client_attributes(self, client_id: Any, overrides: Mapping[str, Any]) -> ClientAttributes | None:
        attributes = self.directory.client_attributes(client_id)
        if attributes is None:
            if not overrides:
                return None
            attributes = ClientAttributes(client_id=client_id)
        if overrides:
            known = {key: value for key, value in overrides.items() if hasattr(attributes, key)}
            if "tags" in known:
                known["tags"] = tuple(known["tags"])
            attributes = replace(attributes, **known)
        return attributes

    # ---------------------------------------------------------------------------
    # Bookkeeping
    # ---------------------------------------------------------------------------

    def record_application(self, rule: PricingRule, amount: Decimal, application_key: str) -> bool:
        """
        Count one application of ``rule``. Returns False when ``application_key``
        was already recorded, so re-rated records never double count.
        """
        now = self.clock.now()
        try:
            with transaction.atomic():
                PricingRuleApplication.objects.create(
                    rule=rule, application_key=application_key, amount=amount, applied_at=now
                )
                PricingRule.objects.filter(pk=rule.pk).update(
                    total_applications=F("total_applications") + 1,
                    total_revenue_generated=F("total_revenue_generated") + amount,
                    last_applied_at=now,
                )
        except IntegrityError:
            logger.info(f"💰 [Pricing] Application {application_key} already recorded for rule {rule.code}")
            return False

        logger.debug(f"💰 [Pricing] Recorded application {application_key} of rule {rule.code}: {amount}")
        return True


class PricingRuleService:
    """Rule lifecycle: edits, approval and versioning, with change history and audit"""

    @staticmethod
    def update_rule(rule: PricingRule, changes: Mapping[str, Any], actor: Any | None = None) -> Result[PricingRule, str]:
        """Apply ``changes`` in place and append the diff to the change history"""
        protected = PROTECTED_RULE_FIELDS & set(changes)
        if protected:
            return Err(f"Cannot change bookkeeping fields: {', '.join(sorted(protected))}")

        try:
            with transaction.atomic():
                locked = PricingRule.objects.select_for_update().get(pk=rule.pk)
                diff = _diff(locked, changes)
                if not diff:
                    return Ok(locked)
                for field_name, value in changes.items():
                    setattr(locked, field_name, value)
                locked.append_change("updated", actor, diff)
                locked.save()

                AuditService.log_simple_event(
                    "pricing_rule_updated",
                    user=actor,
                    content_object=locked,
                    description=f"Pricing rule {locked.code} v{locked.version} updated",
                    new_values=diff,
                    actor_type=_actor_type(actor),
                )
        except ValidationError as e:
            return Err("; ".join(e.messages))
        except PricingRule.DoesNotExist:
            return Err(f"Pricing rule {rule.pk} not found")

        logger.info(f"💰 [Pricing] Rule {locked.code} v{locked.version} updated: {sorted(diff)}")
        return Ok(locked)

    @staticmethod
    def approve_rule(rule: PricingRule, actor: Any | None = None, activate: bool = True) -> Result[PricingRule, str]:
        """Approve a draft or pending rule and optionally activate it"""
        if rule.approval_status == "rejected":
            return Err(f"Rule {rule.code} was rejected and cannot be approved")
        changes: dict[str, Any] = {"approval_status": "approved"}
        if activate:
            changes["is_active"] = True
        return PricingRuleService.update_rule(rule, changes, actor)

    @staticmethod
    def supersede_rule(
        rule: PricingRule, changes: Mapping[str, Any] | None = None, actor: Any | None = None
    ) -> Result[PricingRule, str]:
        """
        Create the next version of ``rule`` with ``changes`` applied and retire
        the current one. Records already rated keep their snapshot of the old
        version; only new events see the new one.
        """
        changes = dict(changes or {})
        protected = PROTECTED_RULE_FIELDS & set(changes)
        if protected:
            return Err(f"Cannot change bookkeeping fields: {', '.join(sorted(protected))}")

        try:
            with transaction.atomic():
                current = PricingRule.objects.select_for_update().get(pk=rule.pk)
                if current.superseded_by_id is not None:
                    return Err(f"Rule {current.code} v{current.version} is already superseded")

                latest_version = PricingRule.objects.filter(code=current.code).aggregate(v=Max("version"))["v"] or 0
                diff = _diff(current, changes)

                values = model_to_dict(
                    current,
                    exclude=[
                        "id",
                        "version",
                        "superseded_by",
                        "total_applications",
                        "total_revenue_generated",
                        "last_applied_at",
                        "change_history",
                        "created_at",
                        "created_by",
                    ],
                )
                values.update(changes)
                customer = values.pop("customer", None)
                successor = PricingRule(
                    **values,
                    version=latest_version + 1,
                    customer_id=getattr(customer, "pk", customer),
                    created_by=actor if hasattr(actor, "pk") else None,
                )
                successor.append_change(
                    "created_as_successor", actor, {"supersedes": str(current.pk), **diff}
                )
                successor.save()

                for tier in current.tiers.all():
                    UsageTier.objects.create(
                        rule=successor,
                        name=tier.name,
                        min_usage=tier.min_usage,
                        max_usage=tier.max_usage,
                        rate=tier.rate,
                        is_active=tier.is_active,
                    )

                current.superseded_by = successor
                current.is_active = False
                current.append_change("superseded", actor, {"superseded_by": str(successor.pk)})
                current.save()

                AuditService.log_simple_event(
                    "pricing_rule_superseded",
                    user=actor,
                    content_object=current,
                    description=f"Pricing rule {current.code} v{current.version} superseded by v{successor.version}",
                    new_values={"successor_id": str(successor.pk), "changes": diff},
                    actor_type=_actor_type(actor),
                )
        except ValidationError as e:
            return Err("; ".join(e.messages))
        except PricingRule.DoesNotExist:
            return Err(f"Pricing rule {rule.pk} not found")

        logger.info(f"💰 [Pricing] Rule {current.code} v{current.version} superseded by v{successor.version}")
        return Ok(successor)
