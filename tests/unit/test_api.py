from __future__ import annotations

from pathlib import Path

from fastapi.testclient import TestClient

from awe_agentrelay.adapters.resolver import BinaryResolver
from awe_agentrelay.api import create_app
from awe_agentrelay.cancellation import CancellationRegistry
from awe_agentrelay.db import Database, SqlCatalog
from awe_agentrelay.queue_store import SqlQueueStore
from awe_agentrelay.service import OrchestratorService


def _client(tmp_path: Path) -> tuple[TestClient, OrchestratorService]:
    db = Database(f'sqlite:///{(tmp_path / "relay.db").as_posix()}')
    db.create_schema()
    service = OrchestratorService(
        catalog=SqlCatalog(db),
        queue=SqlQueueStore(db),
        registry=CancellationRegistry(),
        resolver=BinaryResolver(which=lambda _name: None),
    )
    return TestClient(create_app(service=service)), service


def _workspace(client: TestClient) -> dict:
    resp = client.post('/api/workspaces', json={'title': 'Shop', 'working_directory': '/srv/shop'})
    assert resp.status_code == 201
    return resp.json()


def test_task_flow_over_http(tmp_path: Path):
    client, _ = _client(tmp_path)
    ws = _workspace(client)

    agent = client.post(
        f'/api/workspaces/{ws["id"]}/agents',
        json={'name': 'Planner', 'instruction': 'plan', 'cli_type': 'gemini'},
    )
    assert agent.status_code == 201
    assert agent.json()['order'] == 1

    task = client.post(f'/api/workspaces/{ws["id"]}/tasks', json={'summary': 'Add coupons'})
    assert task.status_code == 201
    task_id = task.json()['id']
    assert task.json()['status'] == 'todo'

    processing = client.get(f'/api/tasks/{task_id}/processing')
    assert processing.status_code == 200
    assert processing.json()['queue_status'] == 'queued'
    assert processing.json()['processing'] is False

    again = client.post(f'/api/tasks/{task_id}/queue', json={'priority': True})
    assert again.status_code == 409
    assert again.json()['code'] == 'conflict'

    prioritized = client.post(f'/api/tasks/{task_id}/prioritize', json={'priority': True})
    assert prioritized.status_code == 200
    assert prioritized.json()['is_priority'] is True

    comment = client.post(f'/api/tasks/{task_id}/comments', json={'content': 'keep it small'})
    assert comment.status_code == 201
    assert comment.json()['author_type'] == 'user'

    events = client.get(f'/api/tasks/{task_id}/events')
    assert events.status_code == 200
    assert [e['type'] for e in events.json()] == ['task_created', 'task_prioritized', 'comment_added']

    status = client.post(f'/api/tasks/{task_id}/status', json={'status': 'done'})
    assert status.status_code == 200
    assert status.json()['status'] == 'done'

    cancel = client.post(f'/api/tasks/{task_id}/cancel')
    assert cancel.status_code == 200
    assert cancel.json() == {'entity_id': task_id, 'cancelled': False}


def test_chat_flow_over_http(tmp_path: Path):
    client, _ = _client(tmp_path)
    ws = _workspace(client)

    chat = client.post(f'/api/workspaces/{ws["id"]}/chats', json={})
    assert chat.status_code == 201
    chat_id = chat.json()['id']
    assert chat.json()['title'] == 'New chat'
    assert chat.json()['agent_id'] is None

    sent = client.post(f'/api/chats/{chat_id}/messages', json={'content': 'add a reviewer agent'})
    assert sent.status_code == 201
    assert sent.json()['role'] == 'user'

    busy = client.post(f'/api/chats/{chat_id}/messages', json={'content': 'hello?'})
    assert busy.status_code == 409

    processing = client.get(f'/api/chats/{chat_id}/processing')
    assert processing.json()['queue_status'] == 'queued'
    messages = client.get(f'/api/chats/{chat_id}/messages')
    assert [m['content'] for m in messages.json()] == ['add a reviewer agent']
    assert client.post(f'/api/chats/{chat_id}/cancel').json()['cancelled'] is False


def test_errors_map_to_status_codes(tmp_path: Path):
    client, _ = _client(tmp_path)
    ws = _workspace(client)

    missing = client.get('/api/tasks/task-missing/events')
    assert missing.status_code == 404
    assert missing.json() == {'code': 'not_found', 'message': 'task not found: task-missing'}

    bad_cli = client.post(
        f'/api/workspaces/{ws["id"]}/agents',
        json={'name': 'X', 'instruction': 'x', 'cli_type': 'cursor'},
    )
    assert bad_cli.status_code == 400
    assert bad_cli.json()['field'] == 'cli_type'

    blank = client.post('/api/workspaces', json={'title': '   '})
    assert blank.status_code == 400
    assert blank.json()['field'] == 'title'

    no_workspace = client.post('/api/workspaces/ws-missing/tasks', json={'summary': 't'})
    assert no_workspace.status_code == 404


def test_delete_workspace_and_tool_health(tmp_path: Path):
    client, _ = _client(tmp_path)
    ws = _workspace(client)

    health = client.get('/api/health/tools')
    assert health.status_code == 200
    assert {row['cli_type'] for row in health.json()} == {'claude', 'gemini', 'codex', 'opencode'}
    assert all(row['available'] is False for row in health.json())

    assert client.delete(f'/api/workspaces/{ws["id"]}').status_code == 204
    assert client.delete(f'/api/workspaces/{ws["id"]}').status_code == 404
    assert client.get('/healthz').json() == {'status': 'ok'}
