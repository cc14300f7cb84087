"""
Test Flask API - JSON routes over the session runtime

Run with: pytest tests/test_app.py
"""

import pytest

from app import create_app
from blueprint_coach.bootstrap import build_service
from blueprint_coach.persistence import InMemoryRemoteStore
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.generators import TemplateGenerator
from blueprint_coach.utils.loop_runner import BackgroundLoop

STRONG_BIG_IDEA = "Students design a renewable-energy proposal for their neighborhood"


@pytest.fixture
def client(tmp_path):
    runner = BackgroundLoop(name="test-loop").start()
    service = build_service(
        CoachSettings(storage_root=str(tmp_path)),
        remote_store=InMemoryRemoteStore(),
        generator=TemplateGenerator(),
        recover=False,
        debounce=False,
    )
    app = create_app(service=service, runner=runner)
    app.config['TESTING'] = True
    with app.test_client() as test_client:
        yield test_client
    runner.run(service.close_all(), timeout=10)
    runner.stop()


def create_session(client, session_id="abc12345"):
    response = client.post('/api/sessions', json={'session_id': session_id})
    assert response.status_code == 200
    return response.get_json()


def test_health(client):
    response = client.get('/api/health')

    assert response.status_code == 200
    assert response.get_json() == {'success': True, 'open_sessions': 0}


def test_create_session(client):
    data = create_session(client)

    assert data['success']
    assert data['session_id'] == "abc12345"
    assert data['prompt'].startswith("Big Idea:")
    assert data['snapshot']['stage'] == "topic_1"
    assert data['snapshot']['status'] == "draft"

    generated = client.post('/api/sessions').get_json()
    assert len(generated['session_id']) == 8


def test_create_session_with_bad_id(client):
    response = client.post('/api/sessions', json={'session_id': "../etc"})

    assert response.status_code == 400
    assert response.get_json()['success'] is False


def test_input_and_confirm_flow(client):
    create_session(client)

    response = client.post('/api/sessions/abc12345/input', json={'text': STRONG_BIG_IDEA})
    data = response.get_json()
    assert response.status_code == 200
    assert data['outcome'] == "awaiting_confirm"
    assert data['snapshot']['pending']['proposed_value'] == STRONG_BIG_IDEA

    response = client.post('/api/sessions/abc12345/confirm', json={'accept': True})
    data = response.get_json()
    assert data['outcome'] == "committed"
    assert data['snapshot']['stage'] == "topic_2"

    snapshot = client.get('/api/sessions/abc12345').get_json()['snapshot']
    assert snapshot['stage'] == "topic_2"
    assert snapshot['revision'] == 2

    print("✓ API confirmation flow test passed")


def test_suggested_input_keeps_provenance(client):
    create_session(client)

    data = client.post(
        '/api/sessions/abc12345/input', json={'text': STRONG_BIG_IDEA, 'suggested': True}
    ).get_json()

    assert data['snapshot']['pending']['provenance'] == "suggested"


def test_bad_payloads_are_rejected(client):
    create_session(client)

    assert client.post('/api/sessions/abc12345/input', json={}).status_code == 400
    assert client.post('/api/sessions/abc12345/confirm', json={'accept': "yes"}).status_code == 400
    assert client.post('/api/sessions/abc12345/jump', json={'stage': "finale"}).status_code == 400


def test_unknown_session_is_404(client):
    response = client.post('/api/sessions/nope1234/input', json={'text': "hello"})

    assert response.status_code == 404
    assert "Unknown session" in response.get_json()['error']
    assert client.get('/api/sessions/nope1234').status_code == 404


def test_rejected_jump_is_not_an_error(client):
    create_session(client)

    response = client.post('/api/sessions/abc12345/jump', json={'stage': "deliverables"})
    data = response.get_json()

    assert response.status_code == 200
    assert data['outcome'] == "jump_rejected"
    assert "topic1.value" in data['rejection']['missing']

    notices = client.get('/api/notifications').get_json()['notifications']
    assert [n['code'] for n in notices] == ["validation"]
    assert client.get('/api/notifications').get_json()['notifications'] == []


def test_reset(client):
    create_session(client)
    client.post('/api/sessions/abc12345/input', json={'text': STRONG_BIG_IDEA})

    data = client.post('/api/sessions/abc12345/reset').get_json()

    assert data['outcome'] == "reset"
    assert data['snapshot']['pending'] is None
    assert data['prompt'].startswith("Starting fresh.")


def test_load_and_sync(client):
    create_session(client)
    client.post('/api/sessions/abc12345/input', json={'text': STRONG_BIG_IDEA})

    data = client.post('/api/sessions/abc12345/load').get_json()
    assert data['success']
    assert data['snapshot']['revision'] == 1
    assert data['snapshot']['pending']['proposed_value'] == STRONG_BIG_IDEA

    report = client.post('/api/sync').get_json()
    assert report == {'success': True, 'attempted': 0, 'succeeded': 0, 'remaining': 0}
