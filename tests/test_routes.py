"""
Integration tests for the REST API (locks, sync queue, deployments,
cloud message relay).
"""

from edge_hub.models import db, QueuedOperation


# =============================================================================
# Health
# =============================================================================

def test_health(client):
    response = client.get('/health')

    assert response.status_code == 200
    assert response.get_json()['status'] == 'healthy'
    assert response.get_json()['deployment_runtime'] is False
    assert response.get_json()['scheduler'] == {'running': False, 'job_count': 0, 'jobs': []}


# =============================================================================
# Check locks
# =============================================================================

class TestLockRoutes:

    def test_acquire_and_inspect(self, client):
        response = client.post('/api/v1/checks/chk-1/lock', json={
            'holder_id': 'ws-1', 'employee_id': 'emp-1',
        })

        assert response.status_code == 200
        assert response.get_json()['lock']['holder_id'] == 'ws-1'

        info = client.get('/api/v1/checks/chk-1/lock').get_json()
        assert info['locked'] is True

    def test_contention_returns_409(self, client):
        client.post('/api/v1/checks/chk-1/lock', json={'holder_id': 'ws-1'})

        response = client.post('/api/v1/checks/chk-1/lock', json={'holder_id': 'ws-2'})

        assert response.status_code == 409
        assert response.get_json()['lock']['holder_id'] == 'ws-1'

    def test_acquire_requires_holder(self, client):
        response = client.post('/api/v1/checks/chk-1/lock', json={})

        assert response.status_code == 400

    def test_acquire_rejects_bad_duration(self, client):
        response = client.post('/api/v1/checks/chk-1/lock', json={
            'holder_id': 'ws-1', 'duration_seconds': -5,
        })

        assert response.status_code == 400

    def test_unlock(self, client):
        client.post('/api/v1/checks/chk-1/lock', json={'holder_id': 'ws-1'})

        wrong = client.post('/api/v1/checks/chk-1/unlock', json={'holder_id': 'ws-2'})
        right = client.post('/api/v1/checks/chk-1/unlock', json={'holder_id': 'ws-1'})

        assert wrong.get_json()['released'] is False
        assert right.get_json()['released'] is True
        assert client.get('/api/v1/checks/chk-1/lock').get_json()['locked'] is False

    def test_release_workstation_locks(self, client):
        client.post('/api/v1/checks/chk-1/lock', json={'holder_id': 'ws-1'})
        client.post('/api/v1/checks/chk-2/lock', json={'holder_id': 'ws-1'})

        response = client.post('/api/v1/workstations/ws-1/release-locks')

        assert response.get_json()['released_count'] == 2


# =============================================================================
# Sync queue
# =============================================================================

class TestSyncRoutes:

    def test_enqueue(self, client):
        response = client.post('/api/v1/sync/queue', json={
            'entity_type': 'check',
            'entity_id': 'chk-1',
            'action': 'update',
            'payload': {'total': 100},
            'priority': 1,
        })

        assert response.status_code == 201
        body = response.get_json()
        assert body['operation']['priority'] == 1
        assert QueuedOperation.query.count() == 1

    def test_enqueue_base64_payload(self, client):
        response = client.post('/api/v1/sync/queue', json={
            'entity_type': 'receipt',
            'entity_id': 'r-1',
            'action': 'create',
            'payload': '//4A',
            'payload_encoding': 'base64',
        })

        assert response.status_code == 201
        assert QueuedOperation.query.first().payload_data() == b'\xff\xfe\x00'
        assert response.get_json()['operation']['payload_format'] == 'binary'

    def test_enqueue_rejects_bad_base64(self, client):
        response = client.post('/api/v1/sync/queue', json={
            'entity_type': 'receipt',
            'entity_id': 'r-1',
            'action': 'create',
            'payload': 'not base64!',
            'payload_encoding': 'base64',
        })

        assert response.status_code == 400

    def test_enqueue_validation(self, client):
        assert client.post('/api/v1/sync/queue', json={}).status_code == 400
        assert client.post('/api/v1/sync/queue', json={
            'entity_type': 'check', 'entity_id': 'x',
        }).status_code == 400
        assert client.post('/api/v1/sync/queue', json={
            'entity_type': 'check', 'entity_id': 'x', 'action': 'update', 'priority': 'high',
        }).status_code == 400

    def test_status_and_stranded(self, client, app):
        client.post('/api/v1/sync/queue', json={
            'entity_type': 'check', 'entity_id': 'a', 'action': 'update',
        })
        op = QueuedOperation.query.first()
        op.attempts = op.max_attempts
        db.session.commit()

        status = client.get('/api/v1/sync/queue/status').get_json()
        stranded = client.get('/api/v1/sync/queue/stranded').get_json()

        assert status['stranded'] == 1
        assert status['pending'] == 0
        assert stranded['count'] == 1
        assert stranded['operations'][0]['entity_id'] == 'a'

    def test_reset(self, client):
        client.post('/api/v1/sync/queue', json={
            'entity_type': 'check', 'entity_id': 'a', 'action': 'update',
        })
        op = QueuedOperation.query.first()
        op_id = op.id

        assert client.post(f'/api/v1/sync/queue/{op_id}/reset').status_code == 409

        op.attempts = op.max_attempts
        db.session.commit()

        response = client.post(f'/api/v1/sync/queue/{op_id}/reset')
        assert response.status_code == 200
        assert response.get_json()['operation']['attempts'] == 0

        assert client.post('/api/v1/sync/queue/9999/reset').status_code == 404


# =============================================================================
# Deployments and cloud messages
# =============================================================================

class TestDeploymentRoutes:

    def test_installed(self, client, app):
        runtime = app.config['DEPLOYMENT_RUNTIME']
        runtime.orchestrator.manifest.record_install('pos-base', '1.0', 'service', 'd1')

        response = client.get('/api/v1/deployments/installed')

        assert response.get_json()['packages']['pos-base']['version'] == '1.0'

    def test_status(self, client):
        body = client.get('/api/v1/deployments/status').get_json()

        assert body['orchestrator']['running'] is False
        assert body['recent'] == []

    def test_check_unavailable_in_testing(self, client):
        assert client.post('/api/v1/deployments/check').status_code == 503


class TestCloudMessageRoute:

    def test_requires_type(self, client):
        assert client.post('/api/v1/cloud/messages', json={}).status_code == 400

    def test_dispatches_to_handlers(self, client):
        response = client.post('/api/v1/cloud/messages', json={'type': 'DEPLOYMENT_CHECK'})

        assert response.status_code == 202
        assert response.get_json()['handled'] == 1

    def test_unknown_type(self, client):
        response = client.post('/api/v1/cloud/messages', json={'type': 'SOMETHING_ELSE'})

        assert response.get_json()['handled'] == 0
