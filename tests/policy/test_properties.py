"""Unit tests for alias resolution against resources."""

import pytest

from policysim.policy.models import Resource
from policysim.policy.properties import PropertyAccessor, parse_tag_alias, split_alias


class StubDetails:
    """Details provider returning canned expanded and supplementary bodies."""

    def __init__(self, expanded=None, supplementary=None):
        self.expanded = expanded
        self.supplementary = supplementary
        self.expanded_calls = 0
        self.supplementary_calls = []

    def get_expanded(self, resource):
        self.expanded_calls += 1
        return self.expanded

    def get_supplementary(self, resource, qualifier):
        self.supplementary_calls.append(qualifier)
        return self.supplementary


@pytest.mark.parametrize("alias,expected", [
    ("tags['env']", "env"),
    ('tags["Cost Center"]', "Cost Center"),
    ("tags[owner]", "owner"),
    ("tags.owner", "owner"),
    ("TAGS['Env']", "Env"),
    ("tags", None),
    ("Microsoft.Storage/storageAccounts/sku.name", None),
])
def test_parse_tag_alias(alias, expected):
    assert parse_tag_alias(alias) == expected


def test_split_alias_keeps_nested_type():
    assert split_alias("Microsoft.Sql/servers/databases/requestedServiceObjectiveName") == (
        "Microsoft.Sql/servers/databases",
        "requestedServiceObjectiveName",
    )


class TestPropertyAccessor:
    """Test cases for PropertyAccessor.get_value."""

    @pytest.fixture
    def accessor(self):
        return PropertyAccessor()

    def test_fixed_aliases(self, accessor, storage_account):
        assert accessor.get_value(storage_account, "type") == "Microsoft.Storage/storageAccounts"
        assert accessor.get_value(storage_account, "Location") == "eastus"
        assert accessor.get_value(storage_account, "name") == "stlegacy"
        assert accessor.get_value(storage_account, "kind") == "StorageV2"
        assert accessor.get_value(storage_account, "id") == storage_account.id
        assert accessor.get_value(storage_account, "tags") == {"env": "prod", "CostCenter": "42"}

    def test_tag_lookup_is_case_insensitive(self, accessor, storage_account):
        assert accessor.get_value(storage_account, "tags['costcenter']") == "42"
        assert accessor.get_value(storage_account, "tags['owner']") is None

    def test_property_alias_reads_properties_envelope(self, accessor, storage_account):
        assert accessor.get_value(
            storage_account, "Microsoft.Storage/storageAccounts/supportsHttpsTrafficOnly"
        ) is False

    def test_property_alias_reads_top_level_object(self, accessor, storage_account):
        assert accessor.get_value(storage_account, "Microsoft.Storage/storageAccounts/sku.name") == "Standard_LRS"

    def test_alias_type_is_case_insensitive(self, accessor, storage_account):
        assert accessor.get_value(
            storage_account, "microsoft.storage/STORAGEACCOUNTS/minimumTlsVersion"
        ) == "TLS1_0"

    def test_alias_for_other_type_returns_none(self, accessor, storage_account):
        assert accessor.get_value(storage_account, "Microsoft.Compute/virtualMachines/licenseType") is None

    def test_unrecognised_alias_shape(self, accessor, storage_account):
        assert accessor.get_value(storage_account, "somethingElse") is None
        assert accessor.get_value(storage_account, "") is None

    def test_expanded_body_is_preferred(self, storage_account):
        details = StubDetails(expanded={"properties": {"minimumTlsVersion": "TLS1_2"}})
        accessor = PropertyAccessor(details)
        assert accessor.get_value(
            storage_account, "Microsoft.Storage/storageAccounts/minimumTlsVersion"
        ) == "TLS1_2"
        assert details.expanded_calls == 1

    def test_listing_payload_used_when_expansion_fails(self, storage_account):
        accessor = PropertyAccessor(StubDetails(expanded=None))
        assert accessor.get_value(
            storage_account, "Microsoft.Storage/storageAccounts/minimumTlsVersion"
        ) == "TLS1_0"

    def test_supplementary_alias_uses_dedicated_fetch(self, payloads):
        nic = Resource.from_api(payloads.resource("nic1", resource_type="Microsoft.Network/networkInterfaces"))
        details = StubDetails(supplementary={
            "properties": {"ipConfigurations": [
                {"properties": {"publicIPAddress": {"id": "/pip/1"}}},
            ]}
        })
        accessor = PropertyAccessor(details)
        value = accessor.get_value(
            nic, "Microsoft.Network/networkInterfaces/ipconfigurations[*].publicIpAddress.id"
        )
        assert value == ["/pip/1"]
        assert details.supplementary_calls == ["publicIpAddresses"]
        assert details.expanded_calls == 0
