"""
Pytest configuration and fixtures.
"""
import pytest


class FakeHost:
    """Records host actions instead of touching the system."""

    def __init__(self, iface="eth0"):
        self.iface = iface
        self.calls = []
        self.written = None

    def require_root(self):
        self.calls.append("require_root")

    def install_package(self):
        self.calls.append("install_package")

    def default_interface(self):
        self.calls.append("default_interface")
        return self.iface

    def backup(self, path):
        self.calls.append("backup")
        return None

    def write_config(self, path, text):
        self.calls.append("write_config")
        self.written = text
        path.write_text(text, encoding="utf-8")

    def restart_service(self):
        self.calls.append("restart_service")


@pytest.fixture
def host():
    return FakeHost()


@pytest.fixture
def config_path(tmp_path):
    return tmp_path / "danted.conf"
