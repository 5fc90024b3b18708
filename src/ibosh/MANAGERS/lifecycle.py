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
Lifecycle reconciliation for the director container.
Brings the container from its observed state to running and ready,
handling image drift, stale containers and post-start configuration.
"""

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ..CPI.base import CPI, ImageManaged
from ..errors import (
    BackendError,
    IBoshError,
    OperationCancelled,
    ReadinessError,
    UpgradeCancelled,
)
from ..LOGS.buffer import LogBuffer
from ..LOGS.writer import LogWriter, MultiWriter
from ..MODELS.image import ImageInfo
from ..MODELS.settings import Settings
from ..REGISTRY.image_reference import ImageReference, is_version_tag
from ..REGISTRY.image_resolver import ImageResolver
from ..UTILS.cancel import CancelToken
from .director import (
    Director,
    DirectorConnection,
    build_stemcell_name,
    load_director_connection,
    parse_os_from_repository,
)
from .ui import UI, UIWriter

logger = logging.getLogger(__name__)

REMOVAL_TIMEOUT = 30.0
REMOVAL_POLL_INTERVAL = 0.2


class ReconcilerState(str, Enum):
    NOT_STARTED = "not_started"
    RECONCILING = "reconciling"
    READY = "ready"
    FAILED = "failed"


@dataclass
class StartOptions:
    skip_update: bool = False
    skip_stemcell_upload: bool = False
    custom_image: str = ""


class LifecycleReconciler:
    """
    Drives a CPI backend from its observed state to a ready director.

    A running container is never touched unless the user confirms an
    upgrade. A stopped container is destroyed and recreated. While the
    director boots, logs are followed on a helper thread into the UI and a
    bounded buffer that is dumped if the director never becomes ready.
    """

    def __init__(self,
                 cpi: CPI,
                 ui: UI,
                 resolver: ImageResolver,
                 director_factory: Callable[[DirectorConnection], Director],
                 settings: Optional[Settings] = None,
                 options: Optional[StartOptions] = None,
                 connection_loader: Callable[[CPI], DirectorConnection] = load_director_connection,
                 colorize: bool = False):
        self.cpi = cpi
        self.ui = ui
        self.resolver = resolver
        self.director_factory = director_factory
        self.settings = settings or Settings()
        self.options = options or StartOptions(
            skip_update=self.settings.skip_update,
            skip_stemcell_upload=self.settings.skip_stemcell_upload,
        )
        self.connection_loader = connection_loader
        self.colorize = colorize
        self.state = ReconcilerState.NOT_STARTED

    def start(self, token: Optional[CancelToken] = None) -> ReconcilerState:
        """
        Reconcile to a running, configured director.

        Raises:
            ReadinessError: if the director does not come up; the buffered
                container logs have been printed by then.
            OperationCancelled: if ``token`` is cancelled.
        """
        token = token or CancelToken()
        self.state = ReconcilerState.RECONCILING
        try:
            self._reconcile(token)
        except Exception:
            self.state = ReconcilerState.FAILED
            raise
        self.state = ReconcilerState.READY
        return self.state

    def _reconcile(self, token: CancelToken) -> None:
        cpi = self.cpi

        running = cpi.is_running(token)
        if running and self._upgrade_running_container(token):
            running = False

        if not running:
            self._resolve_target_image()
            if isinstance(cpi, ImageManaged):
                self._ensure_local_image(cpi, token)

        try:
            cpi.ensure_prerequisites(token)
        except IBoshError as e:
            raise BackendError(f"failed to ensure prerequisites: {e}") from e

        if running:
            self.ui.print_linef("instant-bosh is already running")
            self._print_env_instructions()
            return

        if cpi.exists(token):
            self.ui.print_linef("Removing stopped container...")
            try:
                cpi.destroy(token)
                cpi.ensure_prerequisites(token)
            except IBoshError as e:
                raise BackendError(f"failed to remove stopped container: {e}") from e

        self.ui.print_linef("Starting instant-bosh container...")
        try:
            cpi.start(token)
        except IBoshError as e:
            raise BackendError(f"failed to start container: {e}") from e

        self._wait_for_ready_with_logs(token)

        self.ui.print_linef("instant-bosh is ready!")
        self._configure_director(token)

        self.ui.print_linef("")
        self._print_env_instructions()

    # Image handling

    def _resolve_target_image(self) -> None:
        target = self.cpi.target_image_ref
        try:
            pinned, digest = self.resolver.resolve_image_ref(target)
        except IBoshError as e:
            logger.debug(f"Failed to resolve {target}: {e}")
            self.ui.print_linef("Warning: Could not resolve image digest for %s, using tag", target)
            return
        self.cpi.set_resolved_image(pinned, digest)

    def _upgrade_running_container(self, token: CancelToken) -> bool:
        """
        Offer an upgrade if the running container uses an outdated image.

        Returns:
            True if the container was removed for the upgrade.
        """
        if self.options.skip_update:
            return False

        cpi = self.cpi
        target = cpi.target_image_ref
        try:
            current = cpi.get_current_image_info(token)
        except IBoshError as e:
            logger.debug(f"Failed to get current image info: {e}")
            return False

        self.ui.print_linef("Checking for image updates for %s...", target)
        try:
            remote_digest = self.resolver.get_image_digest(target)
        except IBoshError as e:
            logger.debug(f"Failed to get remote digest: {e}")
            self.ui.print_linef("Warning: Could not get remote image digest: %s", e)
            return False

        if not current.digest and current.ref == target:
            # Without a local digest only immutable references can be compared
            if _is_immutable_ref(target):
                logger.debug(f"Same pinned image ref {target}, skipping upgrade check")
                return False
        elif current.digest == remote_digest:
            logger.debug(f"Digests match ({current.digest}), no upgrade needed")
            return False

        if isinstance(cpi, ImageManaged) and not cpi.image_exists(token):
            self.ui.print_linef("Pulling new image %s...", target)
            cpi.pull_image(token)

        self._show_manifest_diff(
            ImageInfo(ref=current.ref, digest=current.digest),
            ImageInfo(ref=target, digest=remote_digest),
            token,
        )

        self.ui.print_linef("")
        self.ui.print_linef("Continue with upgrade?")
        try:
            self.ui.ask_for_confirmation()
        except UpgradeCancelled:
            self.ui.print_linef("Upgrade cancelled. No changes were made to the running container.")
            return False

        self.ui.print_linef("")
        self.ui.print_linef("Upgrading to new image...")
        self.ui.print_linef("Stopping and removing current container...")
        try:
            cpi.remove_container(token)
        except IBoshError as e:
            raise BackendError(f"removing container: {e}") from e
        self._wait_for_removal(token)
        return True

    def _show_manifest_diff(self, current: ImageInfo, new: ImageInfo, token: CancelToken) -> None:
        try:
            diff = self.resolver.get_manifest_diff(current, new, token)
        except IBoshError as e:
            logger.debug(f"Failed to show manifest diff: {e}")
            self.ui.print_linef("Warning: Could not compare manifests: %s", e)
            diff = ""

        self.ui.print_linef("")
        if diff:
            self.ui.print_linef("Image changes:")
            self.ui.print_linef("")
            self.ui.print_linef("%s", diff)
        else:
            self.ui.print_linef("Image digest changed (ops files or entrypoint may have changed):")
            self.ui.print_linef("  Current: %s", current.digest)
            self.ui.print_linef("  New:     %s", new.digest)

    def _wait_for_removal(self, token: CancelToken) -> None:
        retrying = Retrying(
            stop=stop_after_delay(REMOVAL_TIMEOUT),
            wait=wait_fixed(REMOVAL_POLL_INTERVAL),
            retry=retry_if_result(bool),
            sleep=token.sleep,
        )
        try:
            retrying(self.cpi.exists, token)
        except RetryError as e:
            raise BackendError(f"container removal timed out after {REMOVAL_TIMEOUT:g}s") from e

    def _ensure_local_image(self, cpi: ImageManaged, token: CancelToken) -> None:
        target = self.cpi.target_image_ref
        if not cpi.image_exists(token):
            self.ui.print_linef("Image not found locally, pulling...")
            cpi.pull_image(token)
            return
        if self.options.skip_update:
            self.ui.print_linef("Skipping update check (--skip-update flag set)")
            return
        if self.options.custom_image:
            self.ui.print_linef("Using custom image: %s", self.options.custom_image)
            return

        self.ui.print_linef("Checking for image updates for %s...", target)
        try:
            update_available = cpi.check_for_image_update(token)
        except IBoshError as e:
            logger.debug(f"Failed to check for updates: {e}")
            self.ui.print_linef("Warning: Failed to check for updates, continuing with existing image")
            return

        if not update_available:
            self.ui.print_linef("Image %s is at the latest version", target)
            return

        self.ui.print_linef("Image %s has a newer revision available! Updating...", target)
        cpi.pull_image(token)

    # Startup

    def _wait_for_ready_with_logs(self, token: CancelToken) -> None:
        log_token = token.child()
        buffer = LogBuffer(self.settings.log_buffer_lines)
        ui_writer = LogWriter(
            UIWriter(self.ui),
            message_only=True,
            components=[self.settings.main_component],
        )
        writer = MultiWriter(ui_writer, buffer)
        done = threading.Event()

        def follow():
            try:
                self.cpi.follow_logs(writer, writer, log_token, follow=True, tail="all")
            except OperationCancelled:
                logger.debug("Log follower cancelled")
            except IBoshError as e:
                logger.debug(f"Log follower stopped: {e}")
            finally:
                done.set()

        follower = threading.Thread(target=follow, name="ibosh-log-follower", daemon=True)
        follower.start()

        self.ui.print_linef("Waiting for BOSH to be ready...")
        try:
            self.cpi.wait_for_ready(self.settings.ready_timeout, token)
        except ReadinessError as e:
            self._stop_follower(log_token, done)
            self._print_buffered_logs(buffer)
            self.ui.error_linef("BOSH failed to become ready: %s", e)
            raise
        except BaseException:
            self._stop_follower(log_token, done)
            raise
        self._stop_follower(log_token, done)

    def _stop_follower(self, log_token: CancelToken, done: threading.Event) -> None:
        log_token.cancel()
        if not done.wait(self.settings.log_grace_period):
            logger.debug(f"Log follower still running after {self.settings.log_grace_period:g}s")

    def _print_buffered_logs(self, buffer: LogBuffer) -> None:
        lines = buffer.formatted_lines(self.colorize)
        self.ui.print_linef("")
        self.ui.print_linef("--- Container logs (last %d lines) ---", len(lines))
        for line in lines:
            self.ui.print_linef("%s", line)
        self.ui.print_linef("--- End of container logs ---")
        self.ui.print_linef("")

    # Post-start configuration

    def _configure_director(self, token: CancelToken) -> None:
        self.ui.print_linef("Applying cloud-config...")
        with self.connection_loader(self.cpi) as connection:
            director = self.director_factory(connection)
            try:
                director.update_cloud_config("default", self.cpi.cloud_config_bytes())
            except IBoshError as e:
                raise BackendError(f"failed to apply cloud-config: {e}") from e

            if self.options.skip_stemcell_upload:
                return
            token.raise_if_cancelled()
            self.ui.print_linef("Uploading stemcells...")
            self._upload_stemcells(director)

    def _upload_stemcells(self, director: Director) -> None:
        try:
            existing = {(s.name, s.version) for s in director.stemcells()}
        except IBoshError as e:
            self.ui.print_linef("Warning: Failed to list stemcells: %s", e)
            return

        for image in self.settings.stemcell_images:
            try:
                metadata = self.resolver.get_image_metadata(image)
                name = build_stemcell_name(parse_os_from_repository(metadata.repository))
                if (name, metadata.tag) in existing:
                    self.ui.print_linef("  Stemcell %s/%s already uploaded", name, metadata.tag)
                    continue
                self.ui.print_linef("  Uploading stemcell %s/%s...", name, metadata.tag)
                director.upload_stemcell(metadata.full_reference, name, metadata.tag)
                existing.add((name, metadata.tag))
            except IBoshError as e:
                self.ui.print_linef("  Warning: %s: %s", image, e)
                self.ui.print_linef("  You can manually upload stemcells with: bosh upload-stemcell")

    def _print_env_instructions(self) -> None:
        self.ui.print_linef("To configure your BOSH CLI environment, run:")
        self.ui.print_linef('  eval "$(%s print-env)"', self.cpi.print_env_prefix)


def _is_immutable_ref(image_ref: str) -> bool:
    try:
        ref = ImageReference.parse(image_ref)
    except ValueError:
        return False
    return ref.pinned or is_version_tag(ref.tag or "")
