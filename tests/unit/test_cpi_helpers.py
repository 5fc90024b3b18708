"""
Unit tests for backend-independent CPI helpers.
"""
import json
import subprocess
from unittest.mock import MagicMock

import pytest
import requests
import yaml

from ibosh.CPI import detect
from ibosh.CPI.detect import CPIType, parse_cpi_type
from ibosh.CPI.readiness import director_info_url, wait_for_director
from ibosh.CPI.templates import DOCKER_CLOUD_CONFIG, render_cloud_config
from ibosh.errors import (
    ContainerExitedError,
    DirectorError,
    OperationCancelled,
    ReadinessTimeoutError,
)
from ibosh.UTILS.cancel import CancelToken


def env_output(cpi):
    return json.dumps({"Tables": [{"Rows": [{"cpi": cpi, "name": "bosh"}]}]})


class TestDetect:
    """Tests for CPI type detection."""

    def test_docker(self):
        """Test docker_cpi maps to docker."""
        assert parse_cpi_type(env_output("docker_cpi")) == CPIType.DOCKER

    def test_incus(self):
        """Test lxd_cpi maps to incus."""
        assert parse_cpi_type(env_output("lxd_cpi").encode()) == CPIType.INCUS

    def test_unknown(self):
        """Test unknown CPI names are rejected."""
        with pytest.raises(DirectorError, match="unknown CPI"):
            parse_cpi_type(env_output("warden_cpi"))

    def test_detect_runs_bosh_env(self, monkeypatch):
        """Test detection shells out to bosh env --json."""
        calls = []

        def fake_run(cmd, capture_output=True, text=True, env=None, check=True, timeout=None):
            calls.append(cmd)
            return subprocess.CompletedProcess(cmd, 0, stdout=env_output("docker_cpi"), stderr="")

        monkeypatch.setattr(detect.subprocess, "run", fake_run)
        assert detect.detect_cpi_type(env={"BOSH_ENVIRONMENT": "x"}) == CPIType.DOCKER
        assert calls == [["bosh", "env", "--json"]]

    def test_detect_missing_cli(self, monkeypatch):
        """Test a missing bosh CLI is a director error."""
        def fake_run(*args, **kwargs):
            raise FileNotFoundError("bosh")

        monkeypatch.setattr(detect.subprocess, "run", fake_run)
        with pytest.raises(DirectorError):
            detect.detect_cpi_type()

    @pytest.mark.parametrize("output", ["not json", json.dumps({"Tables": []})])
    def test_bad_output(self, output):
        """Test unusable output is rejected."""
        with pytest.raises(DirectorError):
            parse_cpi_type(output)


class TestTemplates:
    """Tests for cloud-config rendering."""

    def test_render_docker_cloud_config(self):
        """Test the rendered cloud-config is valid YAML with the values."""
        content = render_cloud_config(
            DOCKER_CLOUD_CONFIG,
            subnet="10.245.0.0/16",
            gateway="10.245.0.1",
            reserved="10.245.0.2-10.245.0.10",
            static="10.245.0.11-10.245.0.100",
            network_name="instant-bosh",
            workers=4,
        )
        config = yaml.safe_load(content)
        subnet = config["networks"][0]["subnets"][0]
        assert subnet["range"] == "10.245.0.0/16"
        assert subnet["cloud_properties"]["name"] == "instant-bosh"
        assert config["compilation"]["workers"] == 4

    def test_missing_value_fails(self):
        """Test rendering fails loudly on missing values."""
        from jinja2 import UndefinedError

        with pytest.raises(UndefinedError):
            render_cloud_config(DOCKER_CLOUD_CONFIG, subnet="10.245.0.0/16")


def response(status):
    resp = MagicMock()
    resp.status_code = status
    return resp


class TestReadiness:
    """Tests for the director readiness probe."""

    URL = director_info_url("127.0.0.1", 25555)

    def test_url(self):
        """Test the info URL shape."""
        assert self.URL == "https://127.0.0.1:25555/info"

    def test_ready_after_failures(self):
        """Test polling continues until the director answers 200."""
        session = MagicMock()
        session.get.side_effect = [requests.ConnectionError("refused"), response(503), response(200)]

        wait_for_director(self.URL, lambda: True, max_wait=5, interval=0.01, session=session)

        assert session.get.call_count == 3
        session.get.assert_called_with(self.URL, verify=False, timeout=5.0)

    def test_container_exited(self):
        """Test an exited container fails fast with its logs."""
        session = MagicMock()
        with pytest.raises(ContainerExitedError) as exc:
            wait_for_director(self.URL, lambda: False, max_wait=5, session=session,
                              get_logs=lambda: "boom")
        assert exc.value.logs == "boom"
        session.get.assert_not_called()

    def test_timeout(self):
        """Test the probe gives up after max_wait."""
        session = MagicMock()
        session.get.return_value = response(503)
        with pytest.raises(ReadinessTimeoutError):
            wait_for_director(self.URL, lambda: True, max_wait=0.05, interval=0.01, session=session)

    def test_cancelled(self):
        """Test cancellation stops the probe."""
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            wait_for_director(self.URL, lambda: True, max_wait=5, token=token, session=MagicMock())


class TestCancelToken:
    """Tests for cancellation tokens."""

    def test_child_follows_parent(self):
        """Test cancelling a parent cancels its children."""
        parent = CancelToken()
        child = parent.child()
        parent.cancel()
        assert child.cancelled

    def test_parent_unaffected_by_child(self):
        """Test cancelling a child leaves the parent running."""
        parent = CancelToken()
        parent.child().cancel()
        assert not parent.cancelled

    def test_child_of_cancelled_parent(self):
        """Test children derived after cancellation start cancelled."""
        parent = CancelToken()
        parent.cancel()
        assert parent.child().cancelled

    def test_sleep_raises_when_cancelled(self):
        """Test sleep is interrupted by cancellation."""
        token = CancelToken()
        token.cancel()
        with pytest.raises(OperationCancelled):
            token.sleep(10)
