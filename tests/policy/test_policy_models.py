"""Unit tests for ingesting management API payloads into models."""

from datetime import datetime, timedelta, timezone

from policysim.policy.conditions import AllOf
from policysim.policy.models import (
    EnforcementMode,
    Exemption,
    InitiativeDefinition,
    PolicyAssignment,
    PolicyDefinition,
    Resource,
    scope_of,
)
from policysim.policy.parameters import ParameterReference

from conftest import SUBSCRIPTION_SCOPE


class TestPolicyDefinition:

    def test_from_api_parses_rule_and_defaults(self, payloads, https_condition):
        definition = PolicyDefinition.from_api(payloads.definition("require-https", https_condition))

        assert definition.display_name == "require-https"
        assert isinstance(definition.condition, AllOf)
        assert definition.raw_effect == ParameterReference("effect")
        assert definition.parameter_defaults == {"effect": "Audit"}

    def test_literal_effect(self, payloads, https_condition):
        definition = PolicyDefinition.from_api(payloads.definition("x", https_condition, effect="Deny"))
        assert definition.raw_effect == "Deny"


def test_initiative_references(payloads):
    initiative = InitiativeDefinition.from_api(payloads.initiative(
        "baseline",
        [payloads.member("require-https", "https", {"effect": {"value": "[parameters('storageEffect')]"}})],
        parameters={"storageEffect": {"type": "String", "defaultValue": "Deny"}},
    ))

    assert len(initiative.references) == 1
    reference = initiative.references[0]
    assert reference.reference_id == "https"
    assert reference.parameter_bindings == {"effect": ParameterReference("storageEffect")}
    assert initiative.parameter_defaults == {"storageEffect": "Deny"}


class TestPolicyAssignment:

    def test_from_api(self, payloads):
        assignment = PolicyAssignment.from_api(payloads.assignment(
            "audit-https",
            SUBSCRIPTION_SCOPE,
            "/providers/Microsoft.Authorization/policySetDefinitions/baseline",
            parameters={"storageEffect": "Deny"},
            enforcement_mode="DoNotEnforce",
        ))

        assert assignment.is_initiative
        assert assignment.enforcement_mode == EnforcementMode.DO_NOT_ENFORCE
        assert assignment.parameter_values == {"storageEffect": "Deny"}
        assert assignment.key == assignment.id.lower()

    def test_scope_derived_from_id_when_absent(self, payloads):
        raw = payloads.assignment("a", SUBSCRIPTION_SCOPE, "/providers/x/policyDefinitions/y")
        del raw["properties"]["scope"]
        assert PolicyAssignment.from_api(raw).scope == SUBSCRIPTION_SCOPE

    def test_not_scopes_respect_path_boundaries(self, payloads):
        assignment = PolicyAssignment.from_api(payloads.assignment(
            "a", SUBSCRIPTION_SCOPE, "/providers/x/policyDefinitions/y",
            not_scopes=[f"{SUBSCRIPTION_SCOPE}/resourceGroups/rg-sandbox"],
        ))

        assert assignment.excludes(f"{SUBSCRIPTION_SCOPE}/resourcegroups/RG-SANDBOX/providers/x/y/z")
        assert assignment.excludes(f"{SUBSCRIPTION_SCOPE}/resourceGroups/rg-sandbox")
        assert not assignment.excludes(f"{SUBSCRIPTION_SCOPE}/resourceGroups/rg-sandbox2/providers/x/y/z")

    def test_unknown_enforcement_mode_defaults(self):
        assert EnforcementMode.parse(None) == EnforcementMode.DEFAULT
        assert EnforcementMode.parse("donotenforce") == EnforcementMode.DO_NOT_ENFORCE


class TestExemption:

    def test_from_api(self, payloads):
        exemption = Exemption.from_api(payloads.exemption(
            "waive-https",
            f"{SUBSCRIPTION_SCOPE}/resourceGroups/rg-app",
            f"{SUBSCRIPTION_SCOPE}/providers/Microsoft.Authorization/policyAssignments/a",
            reference_ids=["https"],
            expires_on="2099-01-01T00:00:00Z",
        ))

        assert exemption.scope == f"{SUBSCRIPTION_SCOPE}/resourceGroups/rg-app"
        assert exemption.category == "Waiver"
        assert exemption.expires_on == datetime(2099, 1, 1, tzinfo=timezone.utc)
        assert not exemption.is_expired

    def test_expired(self):
        past = datetime.now(timezone.utc) - timedelta(days=1)
        assert Exemption(id="x", expires_on=past).is_expired
        assert not Exemption(id="x").is_expired


class TestResource:

    def test_from_api(self, payloads):
        resource = Resource.from_api(payloads.resource("vm1", "Microsoft.Compute/virtualMachines", tags={"n": None}))

        assert resource.resource_group == "rg-app"
        assert resource.tags == {"n": ""}
        assert resource.raw["name"] == "vm1"


def test_scope_of():
    exemption_id = f"{SUBSCRIPTION_SCOPE}/providers/Microsoft.Authorization/policyExemptions/x"
    assert scope_of(exemption_id, "/providers/Microsoft.Authorization/policyExemptions/") == SUBSCRIPTION_SCOPE
    assert scope_of("unrelated", "/providers/Microsoft.Authorization/policyExemptions/") == ""
