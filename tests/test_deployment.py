"""
Tests for the DeploymentOrchestrator - dedup gate, cooldown, install and
uninstall flows, status reporting and archive handling.

Tasks are driven with asyncio.run; each test waits for the worker to
drain via wait_idle().
"""

import asyncio
import hashlib
import io
import os
import shutil
import tarfile
import zipfile
from datetime import datetime, timedelta, timezone

import pytest

from edge_hub.services import CloudConnectionError, DeploymentError
from edge_hub.services.deployment import (
    DeploymentOrchestrator,
    DeploymentTask,
    SchedulerState,
    extract_archive,
    safe_package_name,
    sha256_file,
)
from edge_hub.services.script_runner import HostCapabilities, ScriptRunner
from edge_hub.services.status_bus import StatusBus


requires_bash = pytest.mark.skipif(shutil.which('bash') is None, reason='bash not available')

STATUS_ENDPOINT = '/api/cal-deployment-targets/t1/status'


# =============================================================================
# Helpers
# =============================================================================

def make_tar(files, mode=0o755):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w:gz') as tar:
        for name, content in files.items():
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def serve(data):
    """download_file / download_external side effect writing fixed bytes."""
    def _download(url, destination):
        with open(destination, 'wb') as f:
            f.write(data)
        return destination
    return _download


def make_task(**overrides):
    fields = {
        'target_id': 't1',
        'deployment_id': 'd1',
        'package_name': 'POS Base',
        'package_type': 'service',
        'version_number': '1.0.0',
    }
    fields.update(overrides)
    return DeploymentTask(**fields)


def run_tasks(orchestrator, *tasks):
    async def _run():
        results = [orchestrator.submit(task) for task in tasks]
        await orchestrator.wait_idle()
        return results
    return asyncio.run(_run())


def posted_statuses(mock_cloud):
    return [
        c.args[1]['status']
        for c in mock_cloud.post.call_args_list
        if c.args[0] == STATUS_ENDPOINT
    ]


@pytest.fixture
def events():
    return []


@pytest.fixture
def orchestrator(tmp_path, mock_cloud, epoch_clock, events):
    bus = StatusBus()
    bus.subscribe(events.append)
    return DeploymentOrchestrator(
        mock_cloud,
        packages_path=str(tmp_path / 'packages'),
        install_root=str(tmp_path / 'root'),
        status_bus=bus,
        script_runner=ScriptRunner(HostCapabilities.posix()),
        clock=epoch_clock,
    )


# =============================================================================
# Task parsing
# =============================================================================

class TestDeploymentTask:

    def test_from_camel_case(self):
        task = DeploymentTask.from_message({
            'targetId': 't1',
            'deploymentId': 'd1',
            'packageName': 'POS Base',
            'packageType': 'service',
            'versionNumber': '2.0.0',
            'downloadUrl': '/api/p/1',
            'checksum': 'abc',
            'action': 'INSTALL',
            'scheduledAt': '2024-01-15T12:00:00Z',
        })

        assert task.target_id == 't1'
        assert task.version_number == '2.0.0'
        assert task.action == 'install'
        assert task.scheduled_at == datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)

    def test_from_snake_case(self):
        task = DeploymentTask.from_message({
            'target_id': 7,
            'package_name': 'menu-config',
            'package_type': 'config',
            'version_number': '3',
            'action': 'remove',
        })

        assert task.target_id == '7'
        assert task.action == 'remove'
        assert task.download_url is None
        assert task.scheduled_at is None

    def test_missing_target_rejected(self):
        with pytest.raises(DeploymentError):
            DeploymentTask.from_message({'packageName': 'x'})

    def test_non_dict_rejected(self):
        with pytest.raises(DeploymentError):
            DeploymentTask.from_message(['not', 'a', 'dict'])

    def test_bad_schedule_ignored(self):
        task = DeploymentTask.from_message({'targetId': 't', 'packageName': 'p', 'scheduledAt': 'soon'})

        assert task.scheduled_at is None

    def test_safe_package_name(self):
        assert safe_package_name('POS Base') == 'POS-Base'
        assert safe_package_name('a/../b') == 'a-..-b'
        assert safe_package_name('  spaced   out ') == 'spaced-out'
        assert safe_package_name('***') == 'package'


# =============================================================================
# Dedup gate and cooldown
# =============================================================================

class TestSchedulerState:

    def test_cooldown_sequence(self):
        state = SchedulerState(initial_delay=60, max_delay=600)

        delays = [state.record_failure('t1', now=0) for _ in range(6)]

        assert delays == [60, 120, 240, 480, 600, 600]

    def test_success_clears_cooldown(self):
        state = SchedulerState()
        state.record_failure('t1', now=0)

        state.record_success('t1')

        assert 't1' in state.completed
        assert not state.in_cooldown('t1', now=1)
        assert 't1' not in state.retry_delays

    def test_in_cooldown_window(self):
        state = SchedulerState(initial_delay=60)
        state.record_failure('t1', now=100)

        assert state.in_cooldown('t1', now=159)
        assert not state.in_cooldown('t1', now=160)


class TestDedupGate:

    def test_same_target_queued_once(self, orchestrator):
        async def _run():
            first = orchestrator.submit(make_task())
            second = orchestrator.submit(make_task(version_number='1.0.1'))
            queued = orchestrator.queued_target_ids
            await orchestrator.wait_idle()
            return first, second, queued

        first, second, queued = asyncio.run(_run())

        assert (first, second) == (True, False)
        assert queued == ['t1']

    def test_completed_target_not_requeued(self, orchestrator):
        run_tasks(orchestrator, make_task())

        assert run_tasks(orchestrator, make_task()) == [False]

    def test_processing_target_not_requeued(self, orchestrator):
        orchestrator.state.processing.add('t1')

        assert run_tasks(orchestrator, make_task()) == [False]

    def test_future_schedule_skipped(self, orchestrator, epoch_clock):
        later = datetime.fromtimestamp(epoch_clock.now + 3600, tz=timezone.utc)

        assert run_tasks(orchestrator, make_task(scheduled_at=later)) == [False]
        assert orchestrator.state.cooldowns == {}

    def test_past_schedule_runs(self, orchestrator, epoch_clock):
        earlier = datetime.fromtimestamp(epoch_clock.now - 60, tz=timezone.utc)

        assert run_tasks(orchestrator, make_task(scheduled_at=earlier)) == [True]

    def test_failed_target_cools_down(self, orchestrator, epoch_clock):
        run_tasks(orchestrator, make_task(action='explode'))

        assert orchestrator.state.retry_delays['t1'] == 60
        assert run_tasks(orchestrator, make_task(action='explode')) == [False]

        epoch_clock.advance(60)
        assert run_tasks(orchestrator, make_task(action='explode')) == [True]
        assert orchestrator.state.retry_delays['t1'] == 120

    def test_success_after_failure_clears_cooldown(self, orchestrator, mock_cloud, epoch_clock):
        mock_cloud.download_file.side_effect = CloudConnectionError('offline')
        run_tasks(orchestrator, make_task(download_url='/api/p/1'))
        assert 't1' in orchestrator.state.cooldowns

        epoch_clock.advance(60)
        mock_cloud.download_file.side_effect = serve(make_tar({'readme.txt': 'hi'}))
        run_tasks(orchestrator, make_task(download_url='/api/p/1'))

        assert 't1' in orchestrator.state.completed
        assert orchestrator.state.cooldowns == {}


# =============================================================================
# Install flow
# =============================================================================

@requires_bash
class TestInstallWithScript:

    def test_end_to_end_install(self, orchestrator, mock_cloud, events, tmp_path):
        archive = make_tar({
            'install.sh': (
                'echo "installing $PACKAGE_NAME $PACKAGE_VERSION into $1"\n'
                'echo "host=$HOST_ID type=$PACKAGE_TYPE"\n'
                'echo "dir=$PACKAGE_DIR root=$ROOT_DIR"\n'
            ),
            'bin/app.txt': 'payload',
        })
        checksum = hashlib.sha256(archive).hexdigest().upper()
        mock_cloud.download_file.side_effect = serve(archive)

        run_tasks(orchestrator, make_task(download_url='/api/p/1/download', checksum=checksum))

        statuses = [e.status for e in events]
        assert statuses[:3] == ['starting', 'downloading', 'installing']
        assert statuses[-1] == 'completed'
        assert set(statuses[3:-1]) == {'running_script'}
        # One announcement plus one event per output line
        assert len(statuses[3:-1]) == 4

        package_dir = tmp_path / 'packages' / 'service' / 'POS-Base'
        root = str(tmp_path / 'root')
        completed = events[-1]
        assert completed.progress == 100
        assert f'installing POS Base 1.0.0 into {root}' in completed.log_output
        assert 'host=host-1 type=service' in completed.log_output
        assert f'dir={package_dir} root={root}' in completed.log_output

        assert (package_dir / 'bin' / 'app.txt').read_text() == 'payload'
        assert (package_dir / 'POS-Base-1.0.0.tar.gz').exists()
        assert orchestrator.manifest.get('POS Base')['version'] == '1.0.0'
        assert orchestrator.manifest.get('POS Base')['deploymentId'] == 'd1'
        assert 't1' in orchestrator.state.completed

        mock_cloud.download_file.assert_called_once_with(
            '/api/p/1/download', str(package_dir / 'POS-Base-1.0.0.tar.gz'),
        )
        assert posted_statuses(mock_cloud) == [
            'starting', 'downloading', 'installing', 'running_script', 'completed',
        ]

    def test_script_failure_fails_task(self, orchestrator, mock_cloud, events):
        mock_cloud.download_file.side_effect = serve(make_tar({'install.sh': 'echo boom\nexit 2\n'}))

        run_tasks(orchestrator, make_task(download_url='/api/p/1'))

        failed = events[-1]
        assert failed.status == 'failed'
        assert 'exited with code 2' in failed.message
        assert 'boom' in failed.log_output
        assert orchestrator.manifest.get('POS Base') is None
        assert orchestrator.state.retry_delays['t1'] == 60

    def test_script_with_very_long_line_installs(self, orchestrator, mock_cloud, events):
        script = 'head -c 70000 /dev/zero | tr "\\000" x\necho\necho done\n'
        mock_cloud.download_file.side_effect = serve(make_tar({'install.sh': script}))

        run_tasks(orchestrator, make_task(download_url='/api/p/1'))

        assert events[-1].status == 'completed'
        assert events[-1].log_output.endswith('done')
        assert 'x' * 70000 in events[-1].log_output
        assert orchestrator.manifest.get('POS Base')['version'] == '1.0.0'


class TestInstall:

    def test_checksum_mismatch(self, orchestrator, mock_cloud, events, tmp_path):
        mock_cloud.download_file.side_effect = serve(make_tar({'readme.txt': 'hi'}))

        run_tasks(orchestrator, make_task(download_url='/api/p/1', checksum='0' * 64))

        assert events[-1].status == 'failed'
        assert 'Checksum' in events[-1].message
        archive = tmp_path / 'packages' / 'service' / 'POS-Base' / 'POS-Base-1.0.0.tar.gz'
        assert not archive.exists()
        assert orchestrator.manifest.get('POS Base') is None
        assert 't1' in orchestrator.state.cooldowns

    def test_archive_without_script(self, orchestrator, mock_cloud, events, tmp_path):
        mock_cloud.download_file.side_effect = serve(make_tar({'config/menu.json': '{}'}))

        run_tasks(orchestrator, make_task(download_url='/api/p/1'))

        assert [e.status for e in events] == ['starting', 'downloading', 'installing', 'completed']
        assert (tmp_path / 'packages' / 'service' / 'POS-Base' / 'config' / 'menu.json').exists()

    def test_without_download_url(self, orchestrator, mock_cloud, events):
        run_tasks(orchestrator, make_task())

        assert [e.status for e in events] == ['starting', 'installing', 'completed']
        mock_cloud.download_file.assert_not_called()
        assert orchestrator.manifest.get('POS Base')['version'] == '1.0.0'

    def test_external_url_downloaded_anonymously(self, orchestrator, mock_cloud):
        mock_cloud.download_external.side_effect = serve(make_tar({'a.txt': 'a'}))

        run_tasks(orchestrator, make_task(download_url='https://cdn.example.com/p.tgz'))

        mock_cloud.download_external.assert_called_once()
        mock_cloud.download_file.assert_not_called()

    def test_absolute_cloud_url_downloaded_with_auth(self, orchestrator, mock_cloud):
        mock_cloud.download_file.side_effect = serve(make_tar({'a.txt': 'a'}))

        run_tasks(orchestrator, make_task(download_url='https://cloud.test/files/p.tgz'))

        mock_cloud.download_file.assert_called_once()
        mock_cloud.download_external.assert_not_called()

    def test_already_installed_short_circuits(self, orchestrator, mock_cloud, events):
        orchestrator.manifest.record_install('POS Base', '1.0.0', 'service', 'd0')

        run_tasks(orchestrator, make_task(download_url='/api/p/1'))

        assert [e.status for e in events] == ['starting', 'completed']
        assert events[-1].message == 'Already installed'
        mock_cloud.download_file.assert_not_called()

    def test_update_ignores_same_version_check(self, orchestrator, mock_cloud, events):
        orchestrator.manifest.record_install('POS Base', '1.0.0', 'service', 'd0')

        run_tasks(orchestrator, make_task(action='update'))

        assert [e.status for e in events] == ['starting', 'installing', 'completed']
        assert orchestrator.manifest.get('POS Base')['deploymentId'] == 'd1'

    def test_reinstall_wipes_package_dir(self, orchestrator, tmp_path):
        package_dir = tmp_path / 'packages' / 'service' / 'POS-Base'
        package_dir.mkdir(parents=True)
        (package_dir / 'stale.txt').write_text('old')

        run_tasks(orchestrator, make_task(action='reinstall'))

        assert package_dir.is_dir()
        assert not (package_dir / 'stale.txt').exists()

    def test_unknown_action_fails(self, orchestrator, events):
        run_tasks(orchestrator, make_task(action='explode'))

        assert events[-1].status == 'failed'
        assert 'Unknown action' in events[-1].message

    def test_status_post_failure_does_not_fail_task(self, orchestrator, mock_cloud, events):
        mock_cloud.post.side_effect = CloudConnectionError('offline')

        run_tasks(orchestrator, make_task())

        assert events[-1].status == 'completed'
        assert 't1' in orchestrator.state.completed

    def test_failing_observer_does_not_fail_task(self, orchestrator, events):
        def broken(event):
            raise RuntimeError('ui gone')
        orchestrator.status_bus.subscribe(broken)

        run_tasks(orchestrator, make_task())

        assert events[-1].status == 'completed'

    def test_tasks_run_in_fifo_order(self, orchestrator, events):
        run_tasks(
            orchestrator,
            make_task(target_id='a', package_name='first'),
            make_task(target_id='b', package_name='second'),
        )

        starts = [e.package_name for e in events if e.status == 'starting']
        assert starts == ['first', 'second']


# =============================================================================
# Uninstall flow
# =============================================================================

class TestUninstall:

    @requires_bash
    def test_failed_uninstall_script_still_removes(self, orchestrator, events, tmp_path):
        package_dir = tmp_path / 'packages' / 'service' / 'POS-Base'
        package_dir.mkdir(parents=True)
        (package_dir / 'uninstall.sh').write_text('echo cleanup\nexit 1\n')
        orchestrator.manifest.record_install('POS Base', '1.0.0', 'service', 'd0')

        run_tasks(orchestrator, make_task(action='uninstall'))

        assert events[-1].status == 'completed'
        assert 'cleanup' in events[-1].log_output
        assert 'exited with code 1' in events[-1].log_output
        assert not package_dir.exists()
        assert orchestrator.manifest.get('POS Base') is None

    def test_remove_without_package_dir(self, orchestrator, events):
        orchestrator.manifest.record_install('POS Base', '1.0.0', 'service', 'd0')

        run_tasks(orchestrator, make_task(action='remove'))

        assert [e.status for e in events] == ['starting', 'completed']
        assert orchestrator.manifest.get('POS Base') is None


# =============================================================================
# Polling
# =============================================================================

class TestCheckPendingDeployments:

    def _check(self, orchestrator):
        async def _run():
            queued = await orchestrator.check_pending_deployments()
            await orchestrator.wait_idle()
            return queued
        return asyncio.run(_run())

    def test_queues_valid_deployments(self, orchestrator, mock_cloud):
        mock_cloud.get.return_value = [
            {'targetId': 't1', 'deploymentId': 'd1', 'packageName': 'a',
             'packageType': 'config', 'versionNumber': '1', 'action': 'install'},
            {'packageName': 'missing target'},
        ]

        assert self._check(orchestrator) == 1
        mock_cloud.get.assert_called_once_with('/api/service-hosts/host-1/pending-deployments')
        assert orchestrator.manifest.get('a')['version'] == '1'

    def test_accepts_wrapped_list(self, orchestrator, mock_cloud):
        mock_cloud.get.return_value = {'deployments': [
            {'targetId': 't9', 'packageName': 'b', 'versionNumber': '2'},
        ]}

        assert self._check(orchestrator) == 1

    def test_cloud_error_is_logged(self, orchestrator, mock_cloud):
        mock_cloud.get.side_effect = CloudConnectionError('offline')

        assert self._check(orchestrator) == 0

    def test_skipped_without_credentials(self, orchestrator, mock_cloud):
        mock_cloud.clear_token()

        assert self._check(orchestrator) == 0
        mock_cloud.get.assert_not_called()


# =============================================================================
# Archive helpers
# =============================================================================

class TestArchives:

    def test_sha256_file(self, tmp_path):
        path = tmp_path / 'f'
        path.write_bytes(b'hello')

        assert sha256_file(str(path)) == hashlib.sha256(b'hello').hexdigest()

    def test_extract_tar(self, tmp_path):
        archive = tmp_path / 'p.tar.gz'
        archive.write_bytes(make_tar({'a/b.txt': 'b'}))

        extract_archive(str(archive), str(tmp_path / 'out'))

        assert (tmp_path / 'out' / 'a' / 'b.txt').read_text() == 'b'

    def test_extract_zip(self, tmp_path):
        archive = tmp_path / 'p.tar.gz'
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr('c.txt', 'c')

        extract_archive(str(archive), str(tmp_path / 'out'))

        assert (tmp_path / 'out' / 'c.txt').read_text() == 'c'

    def test_tar_traversal_refused(self, tmp_path):
        archive = tmp_path / 'p.tar.gz'
        archive.write_bytes(make_tar({'../evil.txt': 'x'}))

        with pytest.raises(DeploymentError):
            extract_archive(str(archive), str(tmp_path / 'out'))
        assert not (tmp_path / 'evil.txt').exists()

    def test_tar_symlink_escape_refused(self, tmp_path):
        buf = io.BytesIO()
        with tarfile.open(fileobj=buf, mode='w:gz') as tar:
            link = tarfile.TarInfo('link')
            link.type = tarfile.SYMTYPE
            link.linkname = '../../etc/passwd'
            tar.addfile(link)
        archive = tmp_path / 'p.tar.gz'
        archive.write_bytes(buf.getvalue())

        with pytest.raises(DeploymentError):
            extract_archive(str(archive), str(tmp_path / 'out'))

    def test_zip_traversal_refused(self, tmp_path):
        archive = tmp_path / 'p.zip'
        with zipfile.ZipFile(archive, 'w') as zf:
            zf.writestr('../evil.txt', 'x')

        with pytest.raises(DeploymentError):
            extract_archive(str(archive), str(tmp_path / 'out'))

    def test_unsupported_format(self, tmp_path):
        archive = tmp_path / 'p.tar.gz'
        archive.write_bytes(b'definitely not an archive')

        with pytest.raises(DeploymentError):
            extract_archive(str(archive), str(tmp_path / 'out'))
