"""pytest configuration and shared fakes for lab-connect tests."""

import io
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from azure.core.exceptions import ResourceNotFoundError

from lab_connect.fingerprint import PlatformIdentity
from lab_connect.wait import ProgressRenderer

NOW = datetime(2026, 9, 1, 12, 0, tzinfo=timezone.utc)
MAILBOX_URL = "https://labstore.blob.core.windows.net/mailbox"


class FakeIdentity(PlatformIdentity):
    def __init__(self, **overrides):
        self.values = {
            "hostname": "lab-laptop",
            "mac": "aa:bb:cc:dd:ee:01",
            "platform": "linux-x86_64",
            "user": "/home/alice",
            "platform_id": "0f3c9a7d2b",
        }
        self.values.update(overrides)

    def hostname(self):
        return self.values["hostname"]

    def mac_address(self):
        return self.values["mac"]

    def platform(self):
        return self.values["platform"]

    def user_profile(self):
        return self.values["user"]

    def platform_id(self):
        return self.values["platform_id"]


class InMemoryContainer:
    """Just enough of azure.storage.blob.ContainerClient."""

    def __init__(self):
        self.blobs = {}

    def upload_blob(self, name, data, overwrite=False, content_settings=None):
        if isinstance(data, str):
            data = data.encode("utf-8")
        self.blobs[name] = data

    def download_blob(self, name):
        if name not in self.blobs:
            raise ResourceNotFoundError(f"blob {name} not found")
        data = self.blobs[name]
        return SimpleNamespace(readall=lambda: data)

    def list_blobs(self, name_starts_with=None):
        prefix = name_starts_with or ""
        return [SimpleNamespace(name=n) for n in sorted(self.blobs) if n.startswith(prefix)]

    def delete_blob(self, name):
        if name not in self.blobs:
            raise ResourceNotFoundError(f"blob {name} not found")
        del self.blobs[name]


class FakeClock:
    def __init__(self, start=0.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def machine_a():
    return FakeIdentity()


@pytest.fixture
def machine_b():
    return FakeIdentity(hostname="other-desktop", mac="aa:bb:cc:dd:ee:02", platform_id="7e1d4c")


@pytest.fixture
def container():
    return InMemoryContainer()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def quiet_progress():
    return ProgressRenderer(stream=io.StringIO(), interval=1.0, animate=False)
