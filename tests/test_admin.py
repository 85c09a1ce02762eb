"""Tests for the administrator flows and the Azure control plane."""

import json
import os
import stat
import sys
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from azure.core.exceptions import HttpResponseError, ResourceNotFoundError

from conftest import MAILBOX_URL, NOW
from lab_connect.admin import (
    generate_class_tokens,
    load_class_config,
    process_start_requests,
    publish_instance_status,
)
from lab_connect.control_plane import AzureControlPlane
from lab_connect.errors import ControlPlaneError, LabConnectError, MailboxUnavailable
from lab_connect.mailbox import Mailbox
from lab_connect.models import STUDENT_PERMISSIONS, TA_PERMISSIONS, ClassConfig, StartRequest
from lab_connect.tokens import TokenManager, hash_token, parse_token
from lab_connect.wait import wait_for_instance_state

CLASS = {
    "kind": "class",
    "project": "cs101",
    "mailbox_url": MAILBOX_URL,
    "students": ["alice", "bob"],
    "tas": ["carol"],
    "professor": "dana",
    "start_date": "2026-09-01",
    "end_date": "2026-12-20",
}


class FakeControlPlane:
    def __init__(self, states=None, after_start="running", address="203.0.113.5"):
        self.states = dict(states or {})
        self.after_start = after_start
        self.address = address
        self.started = []

    def get_instance_state(self, name):
        if name not in self.states:
            raise ControlPlaneError(f"VM {name} not found")
        return self.states[name]

    def start_instance(self, name):
        self.get_instance_state(name)
        self.started.append(name)
        self.states[name] = self.after_start

    def get_public_ip(self, name):
        return self.address


class FlakyMailbox(Mailbox):
    """Refuses status writes for one user."""

    def __init__(self, container, failing_user):
        super().__init__(MagicMock(), container=container)
        self.failing_user = failing_user

    def publish_status(self, project, user, status):
        if user == self.failing_user:
            raise MailboxUnavailable("write refused")
        super().publish_status(project, user, status)


@pytest.fixture
def mailbox(container):
    return Mailbox(MagicMock(), container=container)


@pytest.fixture
def issued(tmp_path):
    return TokenManager(tmp_path / "issued", clock=lambda: NOW)


@pytest.fixture
def instant_wait(clock, quiet_progress):
    def wait_fn(name, target, state_fn):
        return wait_for_instance_state(name, target, state_fn, progress=quiet_progress, clock=clock,
                                       sleep=clock.sleep)
    return wait_fn


def _tokens_by_user(path):
    lines = [line for line in path.read_text().splitlines() if line and not line.startswith("#")]
    return {line.split(":", 2)[0]: line.split(":", 2) for line in lines}


class TestClassConfig:
    def test_load(self, tmp_path):
        path = tmp_path / "cs101.json"
        path.write_text(json.dumps(CLASS))
        config = load_class_config(path)
        assert config.students == ["alice", "bob"]
        window = config.access_window()
        assert window.start.isoformat() == "2026-09-01T00:00:00+00:00"
        assert window.end.date().isoformat() == "2026-12-20"

    def test_unknown_fields_rejected(self, tmp_path):
        path = tmp_path / "cs101.json"
        path.write_text(json.dumps({**CLASS, "budget": 100}))
        with pytest.raises(LabConnectError, match="invalid class configuration"):
            load_class_config(path)

    def test_missing(self, tmp_path):
        with pytest.raises(LabConnectError, match="not found"):
            load_class_config(tmp_path / "missing.json")

    def test_no_dates_means_no_window(self):
        assert ClassConfig(project="cs101", mailbox_url=MAILBOX_URL).access_window() is None


class TestGenerateClassTokens:
    def test_roster_file(self, tmp_path, issued):
        path = generate_class_tokens(ClassConfig(**CLASS), issued, tmp_path / "out", now=NOW)
        assert path.name == "cs101-tokens.txt"

        content = path.read_text()
        assert content.startswith("# Access tokens for cs101\n# Format: USERNAME:ROLE:TOKEN\n")
        rows = _tokens_by_user(path)
        assert {user: row[1] for user, row in rows.items()} == {
            "alice": "student", "bob": "student", "carol": "ta", "dana": "professor",
        }
        parsed = parse_token(rows["alice"][2])
        assert parsed.mailbox_url == MAILBOX_URL
        assert parsed.expires_at == NOW + timedelta(days=180)
        assert parsed.access_window.start.isoformat() == "2026-09-01T00:00:00+00:00"

    @pytest.mark.skipif(sys.platform.startswith("win"), reason="POSIX permissions")
    def test_roster_file_is_owner_only(self, tmp_path, issued):
        path = generate_class_tokens(ClassConfig(**CLASS), issued, tmp_path, now=NOW)
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_issued_records_kept(self, tmp_path, issued):
        path = generate_class_tokens(ClassConfig(**CLASS), issued, tmp_path, now=NOW)
        rows = _tokens_by_user(path)

        alice = issued.load_token("cs101", "alice")
        assert alice.token_hash == hash_token(rows["alice"][2])
        assert alice.permissions == STUDENT_PERMISSIONS
        assert not alice.bound
        assert issued.load_token("cs101", "carol").permissions == TA_PERMISSIONS
        assert issued.load_token("cs101", "dana").permissions == TA_PERMISSIONS

    def test_unsafe_roster_name_skipped(self, tmp_path, issued):
        config = ClassConfig(project="cs101", mailbox_url=MAILBOX_URL, students=["alice", "../root"])
        path = generate_class_tokens(config, issued, tmp_path, now=NOW)
        assert list(_tokens_by_user(path)) == ["alice"]


class TestProcessStartRequests:
    def _submit(self, tmp_path, mailbox, issued, machine, username="alice"):
        path = generate_class_tokens(ClassConfig(**CLASS), issued, tmp_path / "out", now=NOW)
        opaque = _tokens_by_user(path)[username][2]
        student = TokenManager(tmp_path / f"student-{username}", identity=machine, clock=lambda: NOW)
        token = student.activate_token(opaque, "s-1001")
        mailbox.submit_start_request("cs101", username, StartRequest(
            username=username, student_id="s-1001", token=token.token_hash, requested_at=NOW,
            machine_hash=token.fingerprint.hash,
        ))

    def test_list_only(self, tmp_path, mailbox, issued, machine_a):
        self._submit(tmp_path, mailbox, issued, machine_a)
        cp = FakeControlPlane({"alice": "deallocated"})
        assert process_start_requests(mailbox, cp, "cs101", issued=issued) == {"alice": "pending"}
        assert cp.started == []
        assert "cs101/alice/start-request.json" in mailbox.container.blobs

    def test_approve_starts_and_publishes(self, tmp_path, mailbox, issued, machine_a, instant_wait):
        self._submit(tmp_path, mailbox, issued, machine_a)
        cp = FakeControlPlane({"lab-alice": "deallocated"})

        outcomes = process_start_requests(mailbox, cp, "cs101", approve=True, issued=issued,
                                          instance_template="lab-{username}", wait_fn=instant_wait)
        assert outcomes == {"alice": "started"}
        assert cp.started == ["lab-alice"]
        status = mailbox.read_status("cs101", "alice")
        assert status.ready
        assert status.address == "203.0.113.5"
        assert status.requested_at == NOW
        assert mailbox.list_pending_requests("cs101") == {}

    def test_unknown_token_rejected(self, tmp_path, mailbox, issued, machine_a):
        self._submit(tmp_path, mailbox, issued, machine_a)
        forged = mailbox.list_pending_requests("cs101")["alice"]
        forged.token = "00" * 32
        mailbox.submit_start_request("cs101", "alice", forged)
        cp = FakeControlPlane({"alice": "deallocated"})

        assert process_start_requests(mailbox, cp, "cs101", approve=True, issued=issued) == {"alice": "rejected"}
        assert cp.started == []
        assert mailbox.list_pending_requests("cs101") == {}

    def test_failed_start_is_published(self, tmp_path, mailbox, issued, machine_a, instant_wait):
        self._submit(tmp_path, mailbox, issued, machine_a, "alice")
        self._submit(tmp_path, mailbox, issued, machine_a, "bob")
        # alice's VM does not exist; bob's must still be started
        cp = FakeControlPlane({"bob": "deallocated"})

        outcomes = process_start_requests(mailbox, cp, "cs101", approve=True, wait_fn=instant_wait)
        assert outcomes == {"alice": "failed", "bob": "started"}
        assert mailbox.read_status("cs101", "alice").state == "failed"
        assert mailbox.read_status("cs101", "bob").state == "running"
        assert list(mailbox.list_pending_requests("cs101")) == ["alice"]

    def test_mailbox_failure_for_one_user_does_not_stop_others(self, tmp_path, mailbox, issued, machine_a,
                                                                 container, instant_wait):
        self._submit(tmp_path, mailbox, issued, machine_a, "alice")
        self._submit(tmp_path, mailbox, issued, machine_a, "bob")
        cp = FakeControlPlane({"alice": "deallocated", "bob": "deallocated"})

        flaky = FlakyMailbox(container, failing_user="alice")
        outcomes = process_start_requests(flaky, cp, "cs101", approve=True, wait_fn=instant_wait)
        assert outcomes == {"alice": "failed", "bob": "started"}
        assert cp.started == ["alice", "bob"]
        assert mailbox.read_status("cs101", "bob").ready
        assert list(mailbox.list_pending_requests("cs101")) == ["alice"]

    def test_tas_activate_with_ta_permissions(self, tmp_path, issued, machine_a):
        path = generate_class_tokens(ClassConfig(**CLASS), issued, tmp_path / "out", now=NOW)
        student = TokenManager(tmp_path / "student", identity=machine_a, clock=lambda: NOW)
        carol = student.activate_token(_tokens_by_user(path)["carol"][2], "s-2001")
        assert carol.role == "ta"
        assert carol.permissions == issued.load_token("cs101", "carol").permissions == TA_PERMISSIONS

    def test_error_state_is_published(self, tmp_path, mailbox, issued, machine_a, instant_wait):
        self._submit(tmp_path, mailbox, issued, machine_a)
        cp = FakeControlPlane({"alice": "deallocated"}, after_start="failed")

        outcomes = process_start_requests(mailbox, cp, "cs101", approve=True, wait_fn=instant_wait)
        assert outcomes == {"alice": "failed"}
        assert mailbox.read_status("cs101", "alice").state == "failed"

    def test_publish_instance_status(self, mailbox):
        cp = FakeControlPlane({"alice": "deallocated"})
        status = publish_instance_status(mailbox, cp, "cs101", "alice", "alice")
        assert status.state == "deallocated"
        assert status.address is None
        assert mailbox.read_status("cs101", "alice").state == "deallocated"


class TestAzureControlPlane:
    RG = "lab-rg"
    NIC_ID = "/subscriptions/sub/resourceGroups/net-rg/providers/Microsoft.Network/networkInterfaces/alice-nic"
    PIP_ID = "/subscriptions/sub/resourceGroups/net-rg/providers/Microsoft.Network/publicIPAddresses/alice-ip"

    def _plane(self, compute=None, network=None):
        return AzureControlPlane("sub", self.RG, compute=compute or MagicMock(), network=network or MagicMock())

    def _view(self, *codes):
        return SimpleNamespace(statuses=[SimpleNamespace(code=c) for c in codes])

    @pytest.mark.parametrize("codes,expected", [
        (("ProvisioningState/succeeded", "PowerState/running"), "running"),
        (("ProvisioningState/succeeded", "PowerState/deallocated"), "deallocated"),
        (("ProvisioningState/failed/AllocationFailed",), "failed"),
        (("ProvisioningState/updating",), "unknown"),
    ])
    def test_instance_state(self, codes, expected):
        compute = MagicMock()
        compute.virtual_machines.instance_view.return_value = self._view(*codes)
        assert self._plane(compute=compute).get_instance_state("alice") == expected
        compute.virtual_machines.instance_view.assert_called_once_with(self.RG, "alice")

    def test_missing_vm(self):
        compute = MagicMock()
        compute.virtual_machines.instance_view.side_effect = ResourceNotFoundError("not found")
        with pytest.raises(ControlPlaneError, match="not found"):
            self._plane(compute=compute).get_instance_state("alice")

    def test_start_does_not_wait(self):
        compute = MagicMock()
        self._plane(compute=compute).start_instance("alice")
        compute.virtual_machines.begin_start.assert_called_once_with(self.RG, "alice")
        compute.virtual_machines.begin_start.return_value.result.assert_not_called()

    def test_start_failure(self):
        compute = MagicMock()
        compute.virtual_machines.begin_start.side_effect = HttpResponseError("quota exceeded")
        with pytest.raises(ControlPlaneError, match="failed to start"):
            self._plane(compute=compute).start_instance("alice")

    def test_public_ip(self):
        compute, network = MagicMock(), MagicMock()
        compute.virtual_machines.get.return_value = SimpleNamespace(
            network_profile=SimpleNamespace(network_interfaces=[SimpleNamespace(id=self.NIC_ID)]))
        network.network_interfaces.get.return_value = SimpleNamespace(ip_configurations=[
            SimpleNamespace(public_ip_address=None),
            SimpleNamespace(public_ip_address=SimpleNamespace(id=self.PIP_ID)),
        ])
        network.public_ip_addresses.get.return_value = SimpleNamespace(ip_address="203.0.113.5")

        assert self._plane(compute, network).get_public_ip("alice") == "203.0.113.5"
        network.network_interfaces.get.assert_called_once_with("net-rg", "alice-nic")
        network.public_ip_addresses.get.assert_called_once_with("net-rg", "alice-ip")

    def test_no_public_ip(self):
        compute, network = MagicMock(), MagicMock()
        compute.virtual_machines.get.return_value = SimpleNamespace(
            network_profile=SimpleNamespace(network_interfaces=[SimpleNamespace(id=self.NIC_ID)]))
        network.network_interfaces.get.return_value = SimpleNamespace(
            ip_configurations=[SimpleNamespace(public_ip_address=None)])
        assert self._plane(compute, network).get_public_ip("alice") is None

    def test_vm_without_network_profile(self):
        compute = MagicMock()
        compute.virtual_machines.get.return_value = SimpleNamespace(network_profile=None)
        assert self._plane(compute=compute).get_public_ip("alice") is None
