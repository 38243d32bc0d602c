from __future__ import annotations

from pathlib import Path

from awe_agentrelay.db import Database, SqlCatalog
from awe_agentrelay.domain.actions import (
    CommentAction,
    CreateAgentAction,
    DeleteAgentAction,
    RenameChatAction,
    ReorderAgentsAction,
    SkipAction,
    UpdateAgentAction,
    UpdateWorkspaceAction,
)
from awe_agentrelay.executor import ActionExecutor, ActionOutcome, failure_summary, moved_to_review


def _catalog(tmp_path: Path) -> SqlCatalog:
    db = Database(f'sqlite:///{(tmp_path / "relay.db").as_posix()}')
    db.create_schema()
    return SqlCatalog(db)


def test_comment_then_skip_posts_one_comment_without_status_change(tmp_path: Path):
    catalog = _catalog(tmp_path)
    ws = catalog.create_workspace(title='ws')
    agent = catalog.create_agent(workspace_id=ws['id'], name='Planner', instruction='plan')
    task = catalog.create_task(workspace_id=ws['id'], summary='t')

    outcomes = ActionExecutor(catalog).apply_task_actions(
        task, agent, [CommentAction(content='x'), SkipAction()]
    )

    assert [o.applied for o in outcomes] == [True, True]
    assert moved_to_review(outcomes) is False
    comments = catalog.list_comments(task['id'])
    assert [(c['author_type'], c['agent_id'], c['content']) for c in comments] == [('agent', agent['id'], 'x')]
    event = catalog.list_events(task['id'])[-1]
    assert event['type'] == 'comment_added'
    assert event['actor_id'] == agent['id']
    assert event['payload']['comment_id'] == comments[0]['id']
    assert catalog.get_task(task['id'])['status'] == 'todo'


def test_rename_chat_applies_only_before_first_reply(tmp_path: Path):
    catalog = _catalog(tmp_path)
    ws = catalog.create_workspace(title='ws')
    chat = catalog.create_chat(workspace_id=ws['id'])
    executor = ActionExecutor(catalog)

    first = executor.apply_chat_actions(chat, [RenameChatAction(title='Roster setup')])
    catalog.append_chat_message(chat['id'], role='agent', content='done')
    second = executor.apply_chat_actions(chat, [RenameChatAction(title='Something else')])

    assert first == [ActionOutcome('rename_chat', True)]
    assert second == [ActionOutcome('rename_chat', False, 'Action skipped')]
    assert catalog.get_chat(chat['id'])['title'] == 'Roster setup'
    assert failure_summary(second) == 'Some actions failed:\n- rename_chat: Action skipped'


def test_privileged_actions_dropped_in_agent_chat(tmp_path: Path):
    catalog = _catalog(tmp_path)
    ws = catalog.create_workspace(title='ws')
    agent = catalog.create_agent(workspace_id=ws['id'], name='Planner', instruction='plan')
    chat = catalog.create_chat(workspace_id=ws['id'], agent_id=agent['id'])

    outcomes = ActionExecutor(catalog).apply_chat_actions(
        chat,
        [CreateAgentAction(name='Rogue', instruction='x'), DeleteAgentAction(agent_id=agent['id'])],
    )

    assert [o.applied for o in outcomes] == [False, False]
    assert failure_summary(outcomes) is None
    assert [a['name'] for a in catalog.list_agents(ws['id'])] == ['Planner']


def test_builtin_chat_manages_roster_and_workspace(tmp_path: Path):
    catalog = _catalog(tmp_path)
    ws = catalog.create_workspace(title='ws')
    planner = catalog.create_agent(workspace_id=ws['id'], name='Planner', instruction='plan')
    chat = catalog.create_chat(workspace_id=ws['id'])
    executor = ActionExecutor(catalog)

    outcomes = executor.apply_chat_actions(
        chat,
        [
            CreateAgentAction(name='Tester', instruction='write tests'),
            UpdateAgentAction(agent_id=planner['id'], instruction='plan carefully'),
            UpdateWorkspaceAction(working_directory='/srv/app'),
        ],
    )
    assert all(o.applied for o in outcomes)

    roster = catalog.list_agents(ws['id'])
    assert [(a['name'], a['cli_type']) for a in roster] == [('Planner', 'claude'), ('Tester', 'claude')]
    assert roster[0]['instruction'] == 'plan carefully'
    assert catalog.get_workspace(ws['id'])['working_directory'] == '/srv/app'

    reordered = executor.apply_chat_actions(
        chat, [ReorderAgentsAction(agent_ids=[roster[1]['id'], roster[0]['id']])]
    )
    assert reordered == [ActionOutcome('reorder_agents', True)]
    assert [a['name'] for a in catalog.list_agents(ws['id'])] == ['Tester', 'Planner']


def test_failed_actions_are_reported_without_stopping_the_rest(tmp_path: Path):
    catalog = _catalog(tmp_path)
    ws = catalog.create_workspace(title='ws')
    other = catalog.create_workspace(title='other')
    foreign = catalog.create_agent(workspace_id=other['id'], name='Foreign', instruction='x')
    chat = catalog.create_chat(workspace_id=ws['id'])

    outcomes = ActionExecutor(catalog).apply_chat_actions(
        chat,
        [
            DeleteAgentAction(agent_id=foreign['id']),
            UpdateWorkspaceAction(),
            CreateAgentAction(name='Helper', instruction='help'),
        ],
    )

    assert [o.applied for o in outcomes] == [False, False, True]
    summary = failure_summary(outcomes)
    assert summary.startswith('Some actions failed:\n')
    assert f'- delete_agent: agent not found: {foreign["id"]}' in summary
    assert '- update_workspace: update_workspace named no fields' in summary
    assert catalog.get_agent(foreign['id']) is not None
    assert [a['name'] for a in catalog.list_agents(ws['id'])] == ['Helper']
