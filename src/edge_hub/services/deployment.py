"""
Deployment Orchestrator - installs packages pushed by the control plane.

Deployments reach the hub three ways: a DEPLOYMENT_AVAILABLE push, the
periodic poll of pending deployments, or an on-demand check. Each one is
a DeploymentTask for a single target (package on this host) and goes
through:

    Discovered -> Queued -> Processing -> Completed | FailedWithCooldown

A target is queued at most once. Tasks run strictly one at a time in FIFO
order on a single asyncio worker task that is started when the queue
becomes non-empty and exits once it drains. Downloads, hashing and
extraction run in worker threads and scripts run as subprocesses, so the
event loop stays free while a deployment is in progress.

A failed target is put in cooldown: the first failure waits
initial_delay seconds and every further failure doubles the wait up to
max_delay. Dedup and cooldown state live in SchedulerState, which is
process-lifetime only: after a restart, previously completed targets may
be processed again.

Progress is reported as DeploymentStatus events on the StatusBus; phase
changes are also POSTed to the control plane.
"""

import asyncio
import hashlib
import logging
import os
import re
import shutil
import tarfile
import time
import zipfile
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from edge_hub.services import (
    CloudClientError,
    DeploymentError,
    PackageIntegrityError,
    ScriptExecutionError,
)
from edge_hub.services.cloud_connection import CloudConnection
from edge_hub.services.manifest import PackageManifest
from edge_hub.services.script_runner import ScriptRunner
from edge_hub.services.status_bus import DeploymentStatus, StatusBus


logger = logging.getLogger(__name__)


# Cooldown after a failed deployment (start at 1 min, max 10 min)
INITIAL_RETRY_DELAY_SECONDS = 60
MAX_RETRY_DELAY_SECONDS = 600

PENDING_DEPLOYMENTS_ENDPOINT = '/api/service-hosts/{host_id}/pending-deployments'
TARGET_STATUS_ENDPOINT = '/api/cal-deployment-targets/{target_id}/status'

HASH_CHUNK_SIZE = 1024 * 1024

_UNSAFE_NAME_CHARS = re.compile(r'[^A-Za-z0-9._-]+')


class DeploymentAction(str, Enum):
    """What a deployment asks the hub to do with a package."""
    INSTALL = 'install'
    UPDATE = 'update'
    REINSTALL = 'reinstall'
    UNINSTALL = 'uninstall'
    REMOVE = 'remove'


INSTALL_ACTIONS = {
    DeploymentAction.INSTALL.value,
    DeploymentAction.UPDATE.value,
    DeploymentAction.REINSTALL.value,
}
REMOVE_ACTIONS = {DeploymentAction.UNINSTALL.value, DeploymentAction.REMOVE.value}


class DeploymentStatusType(str, Enum):
    """Phases reported for a deployment."""
    STARTING = 'starting'
    DOWNLOADING = 'downloading'
    INSTALLING = 'installing'
    RUNNING_SCRIPT = 'running_script'
    COMPLETED = 'completed'
    FAILED = 'failed'


def safe_package_name(name: str) -> str:
    """Filesystem-safe form of a package name."""
    return _UNSAFE_NAME_CHARS.sub('-', name).strip('-') or 'package'


def _parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 timestamp into an aware UTC datetime."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            logger.warning(f"Ignoring unparseable scheduledAt value: {value!r}")
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _pick(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


@dataclass
class DeploymentTask:
    """
    One package deployment for one target on this host.

    Attributes:
        target_id: Deployment target id (unit of dedup and cooldown)
        deployment_id: Deployment this target belongs to
        package_name: Package name
        package_type: Package type (used as a directory level)
        version_number: Version being deployed
        download_url: Package archive URL (relative or absolute)
        checksum: Expected SHA-256 hex digest of the archive
        action: Requested action (see DeploymentAction)
        scheduled_at: Do not start before this time
    """
    target_id: str
    deployment_id: str
    package_name: str
    package_type: str
    version_number: str
    download_url: Optional[str] = None
    checksum: Optional[str] = None
    action: str = DeploymentAction.INSTALL.value
    scheduled_at: Optional[datetime] = None

    @classmethod
    def from_message(cls, data: Dict[str, Any]) -> 'DeploymentTask':
        """
        Build a task from a push payload or poll result.

        Accepts camelCase (targetId) and snake_case (target_id) keys.

        Raises:
            DeploymentError: If target id or package name is missing
        """
        if not isinstance(data, dict):
            raise DeploymentError('Deployment payload must be an object')

        target_id = _pick(data, 'targetId', 'target_id')
        package_name = _pick(data, 'packageName', 'package_name')
        if not target_id or not package_name:
            raise DeploymentError(
                'Deployment payload requires target id and package name',
                {'payload_keys': sorted(data.keys())},
            )

        return cls(
            target_id=str(target_id),
            deployment_id=str(_pick(data, 'deploymentId', 'deployment_id') or ''),
            package_name=str(package_name),
            package_type=str(_pick(data, 'packageType', 'package_type') or 'generic'),
            version_number=str(_pick(data, 'versionNumber', 'version_number', 'version') or ''),
            download_url=_pick(data, 'downloadUrl', 'download_url'),
            checksum=_pick(data, 'checksum'),
            action=str(_pick(data, 'action') or DeploymentAction.INSTALL.value).lower(),
            scheduled_at=_parse_timestamp(_pick(data, 'scheduledAt', 'scheduled_at')),
        )


@dataclass
class SchedulerState:
    """
    Dedup and cooldown bookkeeping for one orchestrator.

    Timestamps are seconds from the orchestrator's clock.
    """
    initial_delay: float = INITIAL_RETRY_DELAY_SECONDS
    max_delay: float = MAX_RETRY_DELAY_SECONDS
    processing: Set[str] = field(default_factory=set)
    completed: Set[str] = field(default_factory=set)
    cooldowns: Dict[str, float] = field(default_factory=dict)
    retry_delays: Dict[str, float] = field(default_factory=dict)

    def in_cooldown(self, target_id: str, now: float) -> bool:
        not_before = self.cooldowns.get(target_id)
        return not_before is not None and now < not_before

    def record_failure(self, target_id: str, now: float) -> float:
        """
        Put a target in cooldown after a failure.

        Returns:
            The cooldown delay in seconds
        """
        previous = self.retry_delays.get(target_id, 0)
        delay = min(max(previous * 2, self.initial_delay), self.max_delay)
        self.retry_delays[target_id] = delay
        self.cooldowns[target_id] = now + delay
        return delay

    def record_success(self, target_id: str) -> None:
        self.completed.add(target_id)
        self.cooldowns.pop(target_id, None)
        self.retry_delays.pop(target_id, None)

    def to_dict(self, now: float) -> Dict[str, Any]:
        return {
            'processing': sorted(self.processing),
            'completed': sorted(self.completed),
            'cooldowns': {
                target_id: round(not_before - now, 1)
                for target_id, not_before in self.cooldowns.items()
                if not_before > now
            },
        }


def sha256_file(path: str) -> str:
    """SHA-256 hex digest of a file, read in chunks."""
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(HASH_CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def _ensure_within(root: str, member_path: str) -> None:
    target = os.path.realpath(os.path.join(root, member_path))
    if target != root and not target.startswith(root + os.sep):
        raise DeploymentError(
            'Archive member escapes the package directory',
            {'member': member_path},
        )


def extract_archive(archive_path: str, dest_dir: str) -> None:
    """
    Extract a tar (any compression) or zip archive into dest_dir.

    Raises:
        DeploymentError: On unsupported formats, corrupt archives, or
            members (including link targets) outside dest_dir
    """
    root = os.path.realpath(dest_dir)
    os.makedirs(root, exist_ok=True)

    try:
        if tarfile.is_tarfile(archive_path):
            with tarfile.open(archive_path, 'r:*') as tar:
                for member in tar.getmembers():
                    _ensure_within(root, member.name)
                    if member.issym():
                        if os.path.isabs(member.linkname):
                            raise DeploymentError(
                                'Archive contains an absolute symlink',
                                {'member': member.name},
                            )
                        _ensure_within(
                            root,
                            os.path.join(os.path.dirname(member.name), member.linkname),
                        )
                    elif member.islnk():
                        _ensure_within(root, member.linkname)
                if hasattr(tarfile, 'data_filter'):
                    tar.extractall(root, filter='data')
                else:
                    tar.extractall(root)
        elif zipfile.is_zipfile(archive_path):
            with zipfile.ZipFile(archive_path) as archive:
                for name in archive.namelist():
                    _ensure_within(root, name)
                archive.extractall(root)
        else:
            raise DeploymentError(
                'Unsupported package archive format',
                {'archive': os.path.basename(archive_path)},
            )
    except (tarfile.TarError, zipfile.BadZipFile) as e:
        raise DeploymentError(f'Package extraction failed: {e}')

    logger.info(f"Extracted {archive_path} into {root}")


class DeploymentOrchestrator:
    """
    Queues and runs deployment tasks on the current asyncio event loop.

    submit() and the worker must run on one event loop; see
    DeploymentRuntime for running the orchestrator beside Flask.
    """

    def __init__(
        self,
        cloud: CloudConnection,
        packages_path: str,
        install_root: str,
        host_id: Optional[str] = None,
        status_bus: Optional[StatusBus] = None,
        manifest: Optional[PackageManifest] = None,
        script_runner: Optional[ScriptRunner] = None,
        state: Optional[SchedulerState] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the orchestrator.

        Args:
            cloud: Control plane connection (polls, downloads, status posts)
            packages_path: Root directory for packages and manifest.json
            install_root: Install root handed to package scripts
            host_id: Host id (defaults to cloud.host_id)
            status_bus: Bus for status events (a private one if None)
            manifest: Installed package manifest (created under packages_path if None)
            script_runner: Runner for package scripts (host-detected if None)
            state: Dedup and cooldown state (fresh if None)
            clock: Returns the current time in seconds
        """
        self.cloud = cloud
        self.packages_path = packages_path
        self.install_root = install_root
        self.host_id = host_id if host_id is not None else cloud.host_id
        self.status_bus = status_bus or StatusBus()
        self.manifest = manifest or PackageManifest(packages_path)
        self.script_runner = script_runner or ScriptRunner()
        self.state = state or SchedulerState()
        self._clock = clock

        self._queue: Deque[DeploymentTask] = deque()
        self._worker: Optional[asyncio.Task] = None

        os.makedirs(packages_path, exist_ok=True)

    # -------------------------------------------------------------------------
    # Discovery and queueing
    # -------------------------------------------------------------------------

    @property
    def queued_target_ids(self) -> List[str]:
        return [task.target_id for task in self._queue]

    @property
    def is_busy(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _skip_reason(self, task: DeploymentTask) -> Optional[str]:
        now = self._clock()
        if task.target_id in self.state.processing:
            return 'already being processed'
        if task.target_id in self.state.completed:
            return 'already completed'
        if self.state.in_cooldown(task.target_id, now):
            return 'in cooldown'
        if task.target_id in self.queued_target_ids:
            return 'already queued'
        if task.scheduled_at is not None and task.scheduled_at.timestamp() > now:
            return f'scheduled for {task.scheduled_at.isoformat()}'
        return None

    def submit(self, task: DeploymentTask) -> bool:
        """
        Queue a task unless the dedup gate rejects it.

        Must be called from the orchestrator's event loop.

        Returns:
            True if the task was queued
        """
        reason = self._skip_reason(task)
        if reason:
            logger.info(f"Skipping deployment target {task.target_id}: {reason}")
            return False

        self._queue.append(task)
        logger.info(
            f"Queued deployment: {task.package_name} v{task.version_number} "
            f"({task.action}, target {task.target_id})"
        )
        self._ensure_worker()
        return True

    def submit_message(self, payload: Dict[str, Any]) -> bool:
        """Parse a push payload and submit it; invalid payloads are logged."""
        try:
            task = DeploymentTask.from_message(payload)
        except DeploymentError as e:
            logger.error(f"Ignoring invalid deployment message: {e}")
            return False
        return self.submit(task)

    def _ensure_worker(self) -> None:
        if not self.is_busy:
            self._worker = asyncio.get_running_loop().create_task(self._run_worker())

    async def wait_idle(self) -> None:
        """Wait until the queue has drained and the worker exited."""
        while self.is_busy:
            await self._worker

    async def check_pending_deployments(self) -> int:
        """
        Poll the control plane for pending deployments and queue them.

        Returns:
            Number of tasks queued
        """
        if not self.cloud.is_configured:
            logger.info("Cloud credentials not configured, skipping deployment check")
            return 0

        endpoint = PENDING_DEPLOYMENTS_ENDPOINT.format(host_id=self.host_id)
        try:
            response = await asyncio.to_thread(self.cloud.get, endpoint)
        except CloudClientError as e:
            logger.error(f"Failed to check pending deployments: {e}")
            return 0

        if isinstance(response, dict):
            items = response.get('deployments') or []
        else:
            items = response or []

        logger.info(f"Found {len(items)} pending deployment(s)")

        queued = 0
        for item in items:
            if self.submit_message(item):
                queued += 1
        return queued

    # -------------------------------------------------------------------------
    # Worker
    # -------------------------------------------------------------------------

    async def _run_worker(self) -> None:
        while self._queue:
            task = self._queue.popleft()
            self.state.processing.add(task.target_id)

            success = False
            try:
                logger.info(f"Processing deployment: {task.package_name} v{task.version_number}")
                await self.process(task)
                success = True
            except Exception as e:
                logger.error(f"Deployment {task.target_id} failed: {e}")
            finally:
                self.state.processing.discard(task.target_id)
                if success:
                    self.state.record_success(task.target_id)
                else:
                    delay = self.state.record_failure(task.target_id, self._clock())
                    logger.warning(f"Deployment {task.target_id} failed, retry after {delay:.0f}s")

        logger.info("Deployment worker finished, queue empty")

    async def process(self, task: DeploymentTask) -> None:
        """
        Run one task end to end, reporting every phase.

        Raises:
            DeploymentError: (or a subclass) when the task fails; a
                'failed' status has been broadcast before raising
        """
        log: List[str] = []
        try:
            await self._report(task, DeploymentStatusType.STARTING, f'Starting {task.action}', progress=0)

            if task.action in INSTALL_ACTIONS:
                await self._install(task, log)
            elif task.action in REMOVE_ACTIONS:
                await self._uninstall(task, log)
            else:
                raise DeploymentError(f'Unknown action: {task.action}')

        except Exception as e:
            log_output = e.log_output if isinstance(e, ScriptExecutionError) else '\n'.join(log)
            await self._report(
                task,
                DeploymentStatusType.FAILED,
                str(e),
                log_output=log_output or None,
            )
            raise

    def package_dir(self, task: DeploymentTask) -> str:
        return os.path.join(
            self.packages_path,
            safe_package_name(task.package_type),
            safe_package_name(task.package_name),
        )

    def script_env(self, task: DeploymentTask, package_dir: str) -> Dict[str, str]:
        """Environment handed to install and uninstall scripts."""
        return {
            'ROOT_DIR': self.install_root,
            'PACKAGE_NAME': task.package_name,
            'PACKAGE_VERSION': task.version_number,
            'PACKAGE_TYPE': task.package_type,
            'PACKAGE_DIR': package_dir,
            'HOST_ID': self.host_id or '',
        }

    async def _install(self, task: DeploymentTask, log: List[str]) -> None:
        if task.action == DeploymentAction.INSTALL.value:
            installed = self.manifest.get(task.package_name)
            if installed and installed.get('version') == task.version_number:
                logger.info(f"{task.package_name} v{task.version_number} already installed")
                await self._report(task, DeploymentStatusType.COMPLETED, 'Already installed', progress=100)
                return

        package_dir = self.package_dir(task)
        if task.action == DeploymentAction.REINSTALL.value and os.path.isdir(package_dir):
            logger.info(f"Reinstall: wiping {package_dir}")
            await asyncio.to_thread(shutil.rmtree, package_dir)
        os.makedirs(package_dir, exist_ok=True)

        if task.download_url:
            await self._report(task, DeploymentStatusType.DOWNLOADING, 'Downloading package...', progress=10)
            archive_path = await self._download(task, package_dir)

            await self._report(task, DeploymentStatusType.INSTALLING, 'Extracting package...', progress=50)
            await asyncio.to_thread(extract_archive, archive_path, package_dir)
        else:
            await self._report(task, DeploymentStatusType.INSTALLING, 'Registering package...', progress=50)

        script = self.script_runner.host.find_script(package_dir, 'install')
        if script:
            await self._run_install_script(task, script, package_dir, log)
        else:
            logger.info(f"No install script in {package_dir}, skipping script step")

        await asyncio.to_thread(
            self.manifest.record_install,
            task.package_name,
            task.version_number,
            task.package_type,
            task.deployment_id,
        )

        logger.info(f"Installed: {task.package_name} v{task.version_number}")
        await self._report(
            task,
            DeploymentStatusType.COMPLETED,
            'Installation successful',
            progress=100,
            log_output='\n'.join(log) or None,
        )

    async def _download(self, task: DeploymentTask, package_dir: str) -> str:
        name = safe_package_name(task.package_name)
        archive_path = os.path.join(package_dir, f'{name}-{task.version_number}.tar.gz')

        if self.cloud.is_cloud_url(task.download_url):
            await asyncio.to_thread(self.cloud.download_file, task.download_url, archive_path)
        else:
            await asyncio.to_thread(self.cloud.download_external, task.download_url, archive_path)

        if task.checksum:
            actual = await asyncio.to_thread(sha256_file, archive_path)
            expected = task.checksum.strip().lower()
            if actual.lower() != expected:
                os.remove(archive_path)
                raise PackageIntegrityError(
                    'Checksum verification failed', expected=expected, actual=actual,
                )
            logger.info(f"Checksum verified for {archive_path}")

        return archive_path

    async def _run_install_script(
        self,
        task: DeploymentTask,
        script: str,
        package_dir: str,
        log: List[str],
    ) -> None:
        script_name = os.path.basename(script)
        await self._report(task, DeploymentStatusType.RUNNING_SCRIPT, f'Running {script_name}', progress=70)

        def on_line(line: str) -> None:
            log.append(line)
            self._publish(task, DeploymentStatusType.RUNNING_SCRIPT, line, progress=70)

        try:
            result = await self.script_runner.run(
                script,
                [self.install_root],
                env=self.script_env(task, package_dir),
                cwd=package_dir,
                on_line=on_line,
            )
        except (OSError, ValueError) as e:
            raise ScriptExecutionError(
                f'Could not run {script_name}: {e}', exit_code=-1, log_output='\n'.join(log),
            )

        if not result.succeeded:
            raise ScriptExecutionError(
                f'{script_name} exited with code {result.exit_code}',
                exit_code=result.exit_code,
                log_output=result.log_output,
            )

    async def _uninstall(self, task: DeploymentTask, log: List[str]) -> None:
        package_dir = self.package_dir(task)

        script = None
        if os.path.isdir(package_dir):
            script = self.script_runner.host.find_script(package_dir, 'uninstall')

        if script:
            script_name = os.path.basename(script)
            await self._report(task, DeploymentStatusType.RUNNING_SCRIPT, f'Running {script_name}', progress=50)
            try:
                result = await self.script_runner.run(
                    script,
                    [self.install_root],
                    env=self.script_env(task, package_dir),
                    cwd=package_dir,
                    on_line=lambda line: self._publish(task, DeploymentStatusType.RUNNING_SCRIPT, line),
                )
                log.extend(result.lines)
                if not result.succeeded:
                    message = f'{script_name} exited with code {result.exit_code}, continuing removal'
                    logger.warning(message)
                    log.append(message)
            except (OSError, ValueError) as e:
                message = f'Could not run {script_name}: {e}, continuing removal'
                logger.warning(message)
                log.append(message)

        if os.path.exists(package_dir):
            await asyncio.to_thread(shutil.rmtree, package_dir)
        await asyncio.to_thread(self.manifest.remove, task.package_name)

        logger.info(f"Uninstalled: {task.package_name}")
        await self._report(
            task,
            DeploymentStatusType.COMPLETED,
            'Uninstalled',
            progress=100,
            log_output='\n'.join(log) or None,
        )

    # -------------------------------------------------------------------------
    # Status reporting
    # -------------------------------------------------------------------------

    def _publish(
        self,
        task: DeploymentTask,
        status: DeploymentStatusType,
        message: str,
        progress: Optional[int] = None,
        log_output: Optional[str] = None,
    ) -> DeploymentStatus:
        event = DeploymentStatus(
            status=status.value,
            target_id=task.target_id,
            deployment_id=task.deployment_id,
            package_name=task.package_name,
            package_version=task.version_number,
            message=message,
            progress=progress,
            log_output=log_output,
        )
        self.status_bus.publish(event)
        return event

    async def _report(
        self,
        task: DeploymentTask,
        status: DeploymentStatusType,
        message: str,
        progress: Optional[int] = None,
        log_output: Optional[str] = None,
    ) -> None:
        """Broadcast a phase change locally and post it to the control plane."""
        logger.info(f"Status update for {task.target_id}: {status.value} - {message}")
        self._publish(task, status, message, progress=progress, log_output=log_output)

        endpoint = TARGET_STATUS_ENDPOINT.format(target_id=task.target_id)
        try:
            await asyncio.to_thread(
                self.cloud.post, endpoint, {'status': status.value, 'statusMessage': message},
            )
        except CloudClientError as e:
            logger.error(f"Failed to update status on cloud for {task.target_id}: {e}")

    def get_status(self) -> Dict[str, Any]:
        """Snapshot of queue and scheduler state for monitoring."""
        return {
            'busy': self.is_busy,
            'queued': self.queued_target_ids,
            **self.state.to_dict(self._clock()),
        }

    def installed_packages(self) -> Dict[str, Dict[str, Any]]:
        return self.manifest.installed_packages()
