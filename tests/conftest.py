"""Shared test fixtures and configuration for policysim tests."""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# Add project root to Python path
sys.path.insert(0, str(Path(__file__).parent.parent))

from policysim.azure.errors import ArmNotFoundError
from policysim.policy.models import EffectivePolicy, PolicyAssignment, PolicyDefinition, Resource
from policysim.policy.parameters import ParameterContext, resolve_effect


SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000001"
SUBSCRIPTION_SCOPE = f"/subscriptions/{SUBSCRIPTION_ID}"
DEFINITION_PREFIX = "/providers/Microsoft.Authorization/policyDefinitions/"
INITIATIVE_PREFIX = "/providers/Microsoft.Authorization/policySetDefinitions/"
MG_PREFIX = "/providers/Microsoft.Management/managementGroups/"


class FakeArmClient:
    """In-memory stand-in for ArmClient keyed by request path.

    Registered payloads may be exceptions, which are raised on access.
    Unknown paths raise ArmNotFoundError like the real API.
    """

    def __init__(self):
        self.responses: Dict[str, Any] = {}
        self.calls: List[str] = []
        self.params: List[Optional[Dict[str, str]]] = []
        self.closed = False

    def add(self, path: str, payload: Any) -> "FakeArmClient":
        self.responses[path.rstrip('/').lower()] = payload
        return self

    def _lookup(self, path: str, params: Optional[Dict[str, str]]) -> Any:
        key = path.rstrip('/').lower()
        self.calls.append(key)
        self.params.append(params)
        if key not in self.responses:
            raise ArmNotFoundError(404, path, "NotFound", "not registered")
        payload = self.responses[key]
        if isinstance(payload, Exception):
            raise payload
        return payload

    def get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        return self._lookup(path, params)

    def get_all(self, path: str, params: Optional[Dict[str, str]] = None) -> List[Dict[str, Any]]:
        payload = self._lookup(path, params)
        if isinstance(payload, dict):
            return list(payload.get('value', []))
        return list(payload)

    def count(self, path: str) -> int:
        return self.calls.count(path.rstrip('/').lower())

    def close(self):
        self.closed = True

    def get_stats(self) -> Dict[str, Any]:
        return {"requests": len(self.calls)}


class ArmPayloads:
    """Builders for raw management API payloads."""

    subscription_id = SUBSCRIPTION_ID
    subscription_scope = SUBSCRIPTION_SCOPE

    def definition(
        self,
        name: str,
        condition: Dict[str, Any],
        effect: Any = "[parameters('effect')]",
        parameters: Optional[Dict[str, Any]] = None,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        if parameters is None and effect == "[parameters('effect')]":
            parameters = {"effect": {"type": "String", "defaultValue": "Audit"}}
        return {
            "id": f"{DEFINITION_PREFIX}{name}",
            "name": name,
            "type": "Microsoft.Authorization/policyDefinitions",
            "properties": {
                "displayName": display_name or name,
                "policyType": "Custom",
                "mode": "Indexed",
                "parameters": parameters or {},
                "policyRule": {"if": condition, "then": {"effect": effect}},
            },
        }

    def initiative(
        self,
        name: str,
        members: List[Dict[str, Any]],
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return {
            "id": f"{INITIATIVE_PREFIX}{name}",
            "name": name,
            "properties": {
                "displayName": name,
                "policyType": "Custom",
                "parameters": parameters or {},
                "policyDefinitions": members,
            },
        }

    def member(self, definition_name: str, reference_id: str, parameters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return {
            "policyDefinitionId": f"{DEFINITION_PREFIX}{definition_name}",
            "policyDefinitionReferenceId": reference_id,
            "parameters": parameters or {},
        }

    def assignment(
        self,
        name: str,
        scope: str,
        definition_id: str,
        parameters: Optional[Dict[str, Any]] = None,
        enforcement_mode: str = "Default",
        not_scopes: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        return {
            "id": f"{scope}/providers/Microsoft.Authorization/policyAssignments/{name}",
            "name": name,
            "properties": {
                "displayName": name,
                "scope": scope,
                "policyDefinitionId": definition_id,
                "parameters": {key: {"value": value} for key, value in (parameters or {}).items()},
                "enforcementMode": enforcement_mode,
                "notScopes": not_scopes or [],
            },
        }

    def resource(
        self,
        name: str,
        resource_type: str = "Microsoft.Storage/storageAccounts",
        resource_group: str = "rg-app",
        location: str = "eastus",
        tags: Optional[Dict[str, str]] = None,
        properties: Optional[Dict[str, Any]] = None,
        **extra: Any,
    ) -> Dict[str, Any]:
        raw = {
            "id": f"{SUBSCRIPTION_SCOPE}/resourceGroups/{resource_group}/providers/{resource_type}/{name}",
            "name": name,
            "type": resource_type,
            "location": location,
            "tags": tags or {},
        }
        if properties is not None:
            raw["properties"] = properties
        raw.update(extra)
        return raw

    def management_group(self, name: str, parent: Optional[str] = None) -> Dict[str, Any]:
        details: Dict[str, Any] = {}
        if parent:
            details["parent"] = {"id": f"{MG_PREFIX}{parent}", "name": parent}
        return {
            "id": f"{MG_PREFIX}{name}",
            "name": name,
            "type": "Microsoft.Management/managementGroups",
            "properties": {"displayName": name.title(), "details": details},
        }

    def exemption(
        self,
        name: str,
        scope: str,
        assignment_id: str,
        reference_ids: Optional[List[str]] = None,
        expires_on: Optional[str] = None,
        category: str = "Waiver",
    ) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            "displayName": name,
            "description": f"{name} approved",
            "policyAssignmentId": assignment_id,
            "exemptionCategory": category,
            "policyDefinitionReferenceIds": reference_ids or [],
        }
        if expires_on:
            properties["expiresOn"] = expires_on
        return {
            "id": f"{scope}/providers/Microsoft.Authorization/policyExemptions/{name}",
            "name": name,
            "properties": properties,
        }


def build_effective_policy(
    definition_raw: Dict[str, Any],
    assignment_raw: Dict[str, Any],
) -> EffectivePolicy:
    """Build a standalone (non-initiative) EffectivePolicy without network access."""
    definition = PolicyDefinition.from_api(definition_raw)
    assignment = PolicyAssignment.from_api(assignment_raw)
    parameters = ParameterContext(
        assignment_values=dict(assignment.parameter_values),
        policy_defaults=dict(definition.parameter_defaults),
    )
    effect = resolve_effect(definition.raw_effect, parameters, assignment.enforcement_mode.value)
    return EffectivePolicy(
        assignment=assignment,
        definition=definition,
        parameters=parameters,
        effect=effect.effect,
        raw_effect=effect.raw_effect,
        effect_source=effect.source_trail,
    )


@pytest.fixture
def payloads():
    """Raw payload builders."""
    return ArmPayloads()


@pytest.fixture
def fake_client():
    """Empty fake management API client."""
    return FakeArmClient()


@pytest.fixture
def make_policy():
    """Factory for EffectivePolicy objects built from raw payloads."""
    return build_effective_policy


@pytest.fixture
def storage_account(payloads):
    """Storage account that allows plain HTTP traffic."""
    return Resource.from_api(payloads.resource(
        "stlegacy",
        tags={"env": "prod", "CostCenter": "42"},
        properties={"supportsHttpsTrafficOnly": False, "minimumTlsVersion": "TLS1_0"},
        sku={"name": "Standard_LRS", "tier": "Standard"},
        kind="StorageV2",
    ))


@pytest.fixture
def https_condition():
    """Flags storage accounts that allow HTTP."""
    return {
        "allOf": [
            {"field": "type", "equals": "Microsoft.Storage/storageAccounts"},
            {"field": "Microsoft.Storage/storageAccounts/supportsHttpsTrafficOnly", "equals": "false"},
        ]
    }
