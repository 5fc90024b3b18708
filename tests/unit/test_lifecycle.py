# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.


"""
Unit tests for the lifecycle reconciler.
"""
import threading

import pytest

from ibosh.CPI.base import CPI, ImageManaged
from ibosh.errors import OperationCancelled, ReadinessTimeoutError, RegistryError, UpgradeCancelled
from ibosh.MANAGERS.director import DirectorConnection, Stemcell
from ibosh.MANAGERS.lifecycle import LifecycleReconciler, ReconcilerState, StartOptions
from ibosh.MODELS.image import ImageInfo, ImageMetadata
from ibosh.MODELS.settings import Settings

IMAGE = "ghcr.io/rkoster/instant-bosh:latest"
PINNED = "ghcr.io/rkoster/instant-bosh@sha256:new"
STEMCELL_IMAGE = "ghcr.io/cloudfoundry/ubuntu-noble-stemcell:latest"
BOOT_LOGS = (
    "[main] 2025-11-10T14:35:24.000Z INFO - starting director\n"
    "[director/access] 2025-11-10T14:35:25.000Z INFO - GET /info 503\n"
)


class FakeCPI(CPI, ImageManaged):
    """In-memory backend that records the calls made to it."""

    container_ip = "10.245.0.10"
    print_env_prefix = "ibosh --cpi fake"

    def __init__(self, running=False, exists=False, ready=True, logs=BOOT_LOGS):
        super().__init__(IMAGE)
        self.running = running
        self.present = exists or running
        self.ready = ready
        self.logs = logs
        self.calls = []
        self.local_image = True
        self.update_available = False
        self.current = ImageInfo(ref=IMAGE, digest="sha256:old")
        self.followed = threading.Event()
        self.ready_waits = []

    def start(self, token=None):
        self.calls.append("start")
        self.present = self.running = True

    def stop(self, token=None):
        self.calls.append("stop")
        self.running = False

    def destroy(self, token=None):
        self.calls.append("destroy")
        self.present = self.running = False

    def remove_container(self, token=None):
        self.calls.append("remove_container")
        self.present = self.running = False

    def is_running(self, token=None):
        return self.running

    def exists(self, token=None):
        return self.present

    def resources_exist(self, token=None):
        return True

    def exec_command(self, container, command, token=None):
        return ""

    def get_logs(self, tail="all", token=None):
        return self.logs

    def follow_logs(self, stdout, stderr, token=None, follow=True, tail="all"):
        self.calls.append("follow_logs")
        stdout.write(self.logs)
        self.followed.set()
        token.wait()
        raise OperationCancelled("log streaming cancelled")

    def wait_for_ready(self, max_wait, token=None):
        self.calls.append("wait_for_ready")
        self.ready_waits.append(max_wait)
        self.followed.wait(5)
        if not self.ready:
            raise ReadinessTimeoutError(max_wait)

    def ensure_prerequisites(self, token=None):
        self.calls.append("ensure_prerequisites")

    def get_containers_on_network(self, token=None):
        return []

    def get_current_image_info(self, token=None):
        return self.current

    @property
    def host_address(self):
        return "127.0.0.1"

    def cloud_config_bytes(self):
        return b"azs: []\n"

    def has_direct_network_access(self):
        return True

    def image_exists(self, token=None):
        return self.local_image

    def pull_image(self, token=None):
        self.calls.append("pull_image")
        self.local_image = True

    def check_for_image_update(self, token=None):
        self.calls.append("check_for_image_update")
        return self.update_available


class FakeUI:
    def __init__(self, accept=True):
        self.lines = []
        self.errors = []
        self.accept = accept
        self.asked = 0

    def print_linef(self, pattern, *args):
        self.lines.append(pattern % args if args else pattern)

    def error_linef(self, pattern, *args):
        self.errors.append(pattern % args if args else pattern)

    def ask_for_confirmation(self):
        self.asked += 1
        if not self.accept:
            raise UpgradeCancelled("stopped by user")

    @property
    def output(self):
        return "\n".join(self.lines)


class FakeResolver:
    def __init__(self, remote_digest="sha256:new"):
        self.remote_digest = remote_digest
        self.digest_calls = 0
        self.diff_error = None

    def resolve_image_ref(self, image_ref):
        return PINNED, self.remote_digest

    def get_image_digest(self, image_ref):
        self.digest_calls += 1
        return self.remote_digest

    def get_manifest_diff(self, current, new, token=None):
        if self.diff_error:
            raise self.diff_error
        return "/instance_groups/name=bosh/instances\n  ± value change"

    def get_image_metadata(self, image_ref):
        return ImageMetadata(
            registry="ghcr.io",
            repository="cloudfoundry/ubuntu-noble-stemcell",
            tag="1.5",
            digest="sha256:stem",
            full_reference="ghcr.io/cloudfoundry/ubuntu-noble-stemcell:1.5",
        )


class FakeDirector:
    def __init__(self, stemcells=None):
        self.cloud_configs = []
        self.uploads = []
        self.existing = stemcells or []

    def update_cloud_config(self, name, content):
        self.cloud_configs.append((name, content))

    def stemcells(self):
        return list(self.existing)

    def upload_stemcell(self, location, name, version):
        self.uploads.append((location, name, version))


def make_reconciler(cpi, ui=None, resolver=None, director=None, **option_values):
    ui = ui or FakeUI()
    director = director or FakeDirector()
    settings = Settings(
        ready_timeout=5,
        log_grace_period=2,
        log_buffer_lines=10,
        stemcell_images=[STEMCELL_IMAGE],
    )
    reconciler = LifecycleReconciler(
        cpi,
        ui,
        resolver=resolver or FakeResolver(),
        director_factory=lambda connection: director,
        settings=settings,
        options=StartOptions(**option_values),
        connection_loader=lambda c: DirectorConnection("https://10.245.0.10:25555", "admin", "pw", "ca"),
    )
    return reconciler, ui, director


class TestFreshStart:
    """Tests for starting with nothing present."""

    def test_fresh_start(self):
        """Test the container is started, configured and reported ready."""
        cpi = FakeCPI()
        reconciler, ui, director = make_reconciler(cpi)

        assert reconciler.start() == ReconcilerState.READY

        assert "destroy" not in cpi.calls
        assert cpi.calls.index("ensure_prerequisites") < cpi.calls.index("start")
        assert cpi.calls.index("start") < cpi.calls.index("wait_for_ready")
        assert cpi.calls.count("start") == 1
        assert cpi.calls.count("wait_for_ready") == 1
        assert cpi.ready_waits == [5]
        assert cpi.image_for_create == PINNED
        assert director.cloud_configs == [("default", b"azs: []\n")]
        assert director.uploads == [(
            "ghcr.io/cloudfoundry/ubuntu-noble-stemcell:1.5", "bosh-docker-ubuntu-noble", "1.5",
        )]
        assert "instant-bosh is ready!" in ui.lines
        assert '  eval "$(ibosh --cpi fake print-env)"' in ui.lines

    def test_main_component_messages_shown(self):
        """Test only main component messages reach the UI while booting."""
        cpi = FakeCPI()
        reconciler, ui, _ = make_reconciler(cpi)
        reconciler.start()
        assert "starting director" in ui.lines
        assert not any("GET /info" in line for line in ui.lines)

    def test_missing_image_is_pulled(self):
        """Test an absent local image is pulled before start."""
        cpi = FakeCPI()
        cpi.local_image = False
        reconciler, _, _ = make_reconciler(cpi)
        reconciler.start()
        assert cpi.calls.index("pull_image") < cpi.calls.index("start")

    def test_outdated_image_is_pulled(self):
        """Test a newer registry image is pulled."""
        cpi = FakeCPI()
        cpi.update_available = True
        reconciler, _, _ = make_reconciler(cpi)
        reconciler.start()
        assert "check_for_image_update" in cpi.calls
        assert "pull_image" in cpi.calls

    def test_skip_update_skips_check(self):
        """Test --skip-update does not query for updates."""
        cpi = FakeCPI()
        reconciler, _, _ = make_reconciler(cpi, skip_update=True)
        reconciler.start()
        assert "check_for_image_update" not in cpi.calls

    def test_skip_stemcell_upload(self):
        """Test stemcell upload can be skipped."""
        reconciler, _, director = make_reconciler(FakeCPI(), skip_stemcell_upload=True)
        reconciler.start()
        assert director.cloud_configs
        assert director.uploads == []

    def test_existing_stemcell_not_uploaded(self):
        """Test stemcells already on the director are skipped."""
        director = FakeDirector(stemcells=[Stemcell("bosh-docker-ubuntu-noble", "1.5")])
        reconciler, ui, _ = make_reconciler(FakeCPI(), director=director)
        reconciler.start()
        assert director.uploads == []
        assert "  Stemcell bosh-docker-ubuntu-noble/1.5 already uploaded" in ui.lines


class TestStaleContainer:
    """Tests for a stopped container left behind."""

    def test_stale_container_recreated(self):
        """Test a stopped container is destroyed before start."""
        cpi = FakeCPI(exists=True)
        reconciler, _, _ = make_reconciler(cpi)
        reconciler.start()
        destroy = cpi.calls.index("destroy")
        assert destroy < cpi.calls.index("start")
        assert "ensure_prerequisites" in cpi.calls[destroy:]


class TestAlreadyRunning:
    """Tests for an already running container."""

    def test_same_digest_is_noop(self):
        """Test a running up-to-date container is left alone."""
        cpi = FakeCPI(running=True)
        cpi.current = ImageInfo(ref=IMAGE, digest="sha256:new")
        reconciler, ui, director = make_reconciler(cpi)

        assert reconciler.start() == ReconcilerState.READY

        assert "start" not in cpi.calls
        assert "destroy" not in cpi.calls
        assert "instant-bosh is already running" in ui.lines
        assert director.cloud_configs == []

    def test_skip_update_does_not_query_registry(self):
        """Test --skip-update leaves the running container without checks."""
        cpi = FakeCPI(running=True)
        resolver = FakeResolver()
        reconciler, ui, _ = make_reconciler(cpi, resolver=resolver, skip_update=True)
        reconciler.start()
        assert resolver.digest_calls == 0
        assert "start" not in cpi.calls

    def test_upgrade_accepted(self):
        """Test an accepted upgrade replaces the container."""
        cpi = FakeCPI(running=True)
        reconciler, ui, _ = make_reconciler(cpi, ui=FakeUI(accept=True))

        reconciler.start()

        assert ui.asked == 1
        assert "Continue with upgrade?" in ui.lines
        assert "/instance_groups/name=bosh/instances\n  ± value change" in ui.lines
        assert cpi.calls.index("remove_container") < cpi.calls.index("start")
        assert cpi.image_for_create == PINNED

    def test_upgrade_refused(self):
        """Test a refused upgrade leaves the container untouched."""
        cpi = FakeCPI(running=True)
        reconciler, ui, _ = make_reconciler(cpi, ui=FakeUI(accept=False))

        assert reconciler.start() == ReconcilerState.READY

        assert "Upgrade cancelled. No changes were made to the running container." in ui.lines
        assert "remove_container" not in cpi.calls
        assert "start" not in cpi.calls

    def test_diff_failure_still_asks(self):
        """Test a failed manifest comparison falls back to digests."""
        cpi = FakeCPI(running=True)
        resolver = FakeResolver()
        resolver.diff_error = RegistryError("failed to extract manifest from new image")
        reconciler, ui, _ = make_reconciler(cpi, resolver=resolver, ui=FakeUI(accept=False))

        reconciler.start()

        assert ui.asked == 1
        assert any(line.startswith("Warning: Could not compare manifests") for line in ui.lines)
        assert "  New:     sha256:new" in ui.lines


class TestReadinessFailure:
    """Tests for a director that never becomes ready."""

    def test_timeout_dumps_logs(self):
        """Test buffered logs are printed and the error propagates."""
        cpi = FakeCPI(ready=False)
        reconciler, ui, director = make_reconciler(cpi)

        with pytest.raises(ReadinessTimeoutError):
            reconciler.start()

        assert reconciler.state == ReconcilerState.FAILED
        assert "--- Container logs (last 2 lines) ---" in ui.lines
        assert "[director/access] 14:35:25.000 INFO - GET /info 503" in ui.lines
        assert "--- End of container logs ---" in ui.lines
        assert director.cloud_configs == []
        assert "instant-bosh is ready!" not in ui.lines
