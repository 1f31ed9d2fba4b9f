"""Tests for the simulation runner against a fake management API."""

import csv
import json

import httpx
import pytest
from azure.core.exceptions import ClientAuthenticationError

from policysim.azure.client import ArmClient
from policysim.azure.errors import ArmApiError
from policysim.azure.hierarchy import management_group_scope
from policysim.cli.config import SimulatorConfiguration
from policysim.cli.runner import ExitCode, SimulationRunner, assignment_changes
from policysim.policy.evaluator import PolicyEvaluationEngine
from policysim.policy.models import AssignmentChange, MigrationVerdict, PolicyAssignment

from conftest import DEFINITION_PREFIX, SUBSCRIPTION_ID, SUBSCRIPTION_SCOPE


CORP = management_group_scope("corp")
LEGACY = management_group_scope("legacy")
ROOT = management_group_scope("root")


def assignments_path(scope):
    return f"{scope}/providers/Microsoft.Authorization/policyAssignments"


def exemptions_path(scope):
    return f"{scope}/providers/Microsoft.Authorization/policyExemptions"


class FailingCredential:
    def get_token(self, *scopes):
        raise ClientAuthenticationError("no login")


@pytest.fixture
def tenant(fake_client, payloads, https_condition):
    """legacy -> root and corp -> root, one storage account in the subscription.

    root assigns require-https (Audit) and corp assigns allowed-location (Deny).
    """
    for name, parent in (("corp", "root"), ("legacy", "root"), ("root", None)):
        fake_client.add(management_group_scope(name), payloads.management_group(name, parent))

    fake_client.add(f"{DEFINITION_PREFIX}require-https", payloads.definition(
        "require-https", https_condition, display_name="Require HTTPS",
    ))
    fake_client.add(f"{DEFINITION_PREFIX}allowed-location", payloads.definition(
        "allowed-location",
        {"not": {"field": "location", "in": "[parameters('locations')]"}},
        effect="Deny",
        parameters={"locations": {"type": "Array", "defaultValue": ["westeurope"]}},
        display_name="Allowed locations",
    ))

    fake_client.add(assignments_path(SUBSCRIPTION_SCOPE), {"value": []})
    fake_client.add(assignments_path(LEGACY), {"value": []})
    fake_client.add(assignments_path(ROOT), {"value": [
        payloads.assignment("root-https", ROOT, f"{DEFINITION_PREFIX}require-https"),
    ]})
    fake_client.add(assignments_path(CORP), {"value": [
        payloads.assignment("corp-location", CORP, f"{DEFINITION_PREFIX}allowed-location"),
    ]})

    storage = payloads.resource("stlegacy", properties={"supportsHttpsTrafficOnly": False})
    fake_client.add(f"{SUBSCRIPTION_SCOPE}/resources", {"value": [storage]})
    fake_client.add(storage["id"], storage)

    for scope in (SUBSCRIPTION_SCOPE, CORP, ROOT):
        fake_client.add(exemptions_path(scope), {"value": []})
    return fake_client


@pytest.fixture
def make_config(tmp_path):
    def factory(**azure):
        settings = {"subscription_id": SUBSCRIPTION_ID, "target_group": "corp"}
        settings.update(azure)
        return SimulatorConfiguration(
            azure=settings,
            execution={"base_delay": 0.0, "max_delay": 0.0},
            output={"output_dir": tmp_path, "quiet": True},
        )
    return factory


class TestSimulationRunner:

    def test_deny_violation_blocks(self, tenant, make_config, tmp_path):
        runner = SimulationRunner(make_config(), client=tenant)

        assert runner.run() == ExitCode.BLOCKED

        run = runner.run_result
        assert run.summary.verdict == MigrationVerdict.BLOCKED
        assert run.summary.violations == 2
        effects = sorted(result.effect for result in run.results)
        assert effects == ["Audit", "Deny"]

        exports = list(tmp_path.glob("policysim_*.csv"))
        assert len(exports) == 1
        with exports[0].open(encoding="utf-8", newline="") as handle:
            rows = list(csv.DictReader(handle))
        assert {row["policy_display_name"] for row in rows} == {"Require HTTPS", "Allowed locations"}

        summary = runner.summary_reporter.summary
        assert summary.target_hierarchy == ["corp", "root"]
        assert summary.exit_code == 2
        assert summary.output_files == exports

    def test_exempted_deny_leaves_review(self, tenant, make_config, payloads):
        tenant.add(exemptions_path(SUBSCRIPTION_SCOPE), {"value": [
            payloads.exemption(
                "location-waiver", SUBSCRIPTION_SCOPE,
                f"{CORP}/providers/Microsoft.Authorization/policyAssignments/corp-location",
            ),
        ]})
        runner = SimulationRunner(make_config(), client=tenant)

        assert runner.run() == ExitCode.REVIEW_REQUIRED
        exempt = [result for result in runner.run_result.results if result.is_exempt]
        assert [result.exemption_name for result in exempt] == ["location-waiver"]

    def test_source_group_labels_assignment_changes(self, tenant, make_config):
        runner = SimulationRunner(make_config(source_group="legacy"), client=tenant)
        runner.run()

        changes = {result.assignment_name: result.assignment_change for result in runner.run_result.results}
        assert changes == {
            "root-https": AssignmentChange.EXISTING,
            "corp-location": AssignmentChange.NEW,
        }
        assert runner.summary_reporter.summary.new_assignments == 1

    def test_unresolvable_source_group_is_a_warning(self, tenant, make_config):
        runner = SimulationRunner(make_config(source_group="gone"), client=tenant)
        runner.run()

        assert {result.assignment_change for result in runner.run_result.results} == {AssignmentChange.UNKNOWN}
        assert any("gone" in warning for warning in runner.summary_reporter.summary.warnings)

    def test_no_policies_is_safe(self, tenant, make_config):
        tenant.add(assignments_path(CORP), {"value": []})
        tenant.add(assignments_path(ROOT), {"value": []})
        runner = SimulationRunner(make_config(), client=tenant)

        assert runner.run() == ExitCode.SUCCESS
        assert runner.run_result.summary.verdict == MigrationVerdict.SAFE
        assert tenant.count(f"{SUBSCRIPTION_SCOPE}/resources") == 0

    def test_hierarchy_failure_is_runtime_error(self, tenant, make_config):
        runner = SimulationRunner(make_config(target_group="missing"), client=tenant)

        assert runner.run() == ExitCode.RUNTIME_ERROR
        assert runner.run_result is None
        assert "missing" in runner.summary_reporter.summary.errors[0]

    def test_resource_listing_failure_is_runtime_error(self, tenant, make_config):
        tenant.add(f"{SUBSCRIPTION_SCOPE}/resources", ArmApiError(500, "/resources", "InternalServerError"))
        runner = SimulationRunner(make_config(), client=tenant)

        assert runner.run() == ExitCode.RUNTIME_ERROR

    def test_hierarchy_failure_summary_is_not_safe(self, tenant, tmp_path):
        config = SimulatorConfiguration(
            azure={"subscription_id": SUBSCRIPTION_ID, "target_group": "missing"},
            output={"output_dir": tmp_path, "quiet": True, "summary_format": "json"},
        )
        runner = SimulationRunner(config, client=tenant)
        runner.run()

        data = json.loads(runner.summary_reporter.generate_summary())
        assert data["summary"]["verdict"] == "FAILED"
        assert data["exit_code"] == 4

    def test_credential_failure_is_runtime_error(self, make_config):
        requests = []
        client = ArmClient(
            credential=FailingCredential(),
            transport=httpx.MockTransport(lambda request: requests.append(request) or httpx.Response(200, json={})),
        )
        runner = SimulationRunner(make_config(), client=client)

        assert runner.run() == ExitCode.RUNTIME_ERROR
        assert requests == []
        assert "no login" in runner.summary_reporter.summary.errors[0]
        client.close()

    def test_unexpected_error_is_runtime_error(self, tenant, make_config, monkeypatch):
        def explode(self, resources, policies, context):
            raise RuntimeError("evaluator bug")

        monkeypatch.setattr(PolicyEvaluationEngine, "evaluate", explode)
        runner = SimulationRunner(make_config(), client=tenant)

        assert runner.run() == ExitCode.RUNTIME_ERROR
        assert runner.summary_reporter.summary.errors == ["Runtime error: evaluator bug"]
        assert runner.summary_reporter.summary.exit_code == 4

    def test_injected_client_is_not_closed(self, tenant, make_config):
        SimulationRunner(make_config(), client=tenant).run()
        assert not tenant.closed

    def test_diagnostics_are_collected(self, tenant, make_config):
        runner = SimulationRunner(make_config(), client=tenant)
        runner.run()

        diagnostics = runner.summary_reporter.summary.diagnostics
        assert diagnostics["requests"]["requests"] == len(tenant.calls)
        assert "cache" in diagnostics
        assert diagnostics["exemptions"]["exemptions"] == 0


def test_assignment_changes(payloads):
    ours = PolicyAssignment.from_api(payloads.assignment("a", ROOT, "/d"))
    theirs = PolicyAssignment.from_api(payloads.assignment("b", CORP, "/d"))

    assert assignment_changes([ours, theirs], None) == {
        ours.key: AssignmentChange.UNKNOWN,
        theirs.key: AssignmentChange.UNKNOWN,
    }
    assert assignment_changes([ours, theirs], [ours]) == {
        ours.key: AssignmentChange.EXISTING,
        theirs.key: AssignmentChange.NEW,
    }
