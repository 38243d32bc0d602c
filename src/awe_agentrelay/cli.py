from __future__ import annotations

import argparse
import json
import os
import sys

import httpx

DEFAULT_API_BASE = 'http://127.0.0.1:8000'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog='awe-agentrelay', description='Drive the agent relay service')
    parser.add_argument(
        '--api-base',
        default=os.getenv('AWE_RELAY_API_BASE', DEFAULT_API_BASE),
        help='Relay API base URL',
    )

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('tools', help='Show which agent CLIs resolve on the server host')

    queue = sub.add_parser('queue', help='Queue a task for processing')
    queue.add_argument('task_id', help='Task id')
    queue.add_argument('--priority', action='store_true', help='Jump ahead of non-priority items')

    comment = sub.add_parser('comment', help='Comment on a task (re-queues it unless done)')
    comment.add_argument('task_id', help='Task id')
    comment.add_argument('content', help='Comment text')

    cancel = sub.add_parser('cancel', help='Cancel the running invocation of a task or chat')
    cancel.add_argument('entity_id', help='Task or chat id')
    cancel.add_argument('--chat', action='store_true', help='The id names a chat')

    status = sub.add_parser('status', help='Change a task status')
    status.add_argument('task_id', help='Task id')
    status.add_argument('status', choices=['todo', 'in_progress', 'in_review', 'done'])

    events = sub.add_parser('events', help='Show the activity log of a task')
    events.add_argument('task_id', help='Task id')

    chat = sub.add_parser('chat', help='Send a chat message')
    chat.add_argument('chat_id', help='Chat id')
    chat.add_argument('content', help='Message text')

    serve = sub.add_parser('serve', help='Run the API server and queue poller')
    serve.add_argument('--host', default='127.0.0.1')
    serve.add_argument('--port', type=int, default=8000)
    return parser


def _print_json(payload) -> None:
    print(json.dumps(payload, ensure_ascii=True, indent=2))


def _serve(host: str, port: int) -> int:
    import uvicorn

    uvicorn.run('awe_agentrelay.main:app', host=host, port=port)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == 'serve':
        return _serve(args.host, int(args.port))

    base = args.api_base.rstrip('/')
    with httpx.Client(timeout=60) as client:
        if args.command == 'tools':
            response = client.get(f'{base}/api/health/tools')
        elif args.command == 'queue':
            response = client.post(f'{base}/api/tasks/{args.task_id}/queue', json={'priority': bool(args.priority)})
        elif args.command == 'comment':
            response = client.post(f'{base}/api/tasks/{args.task_id}/comments', json={'content': args.content})
        elif args.command == 'cancel':
            scope = 'chats' if args.chat else 'tasks'
            response = client.post(f'{base}/api/{scope}/{args.entity_id}/cancel')
        elif args.command == 'status':
            response = client.post(f'{base}/api/tasks/{args.task_id}/status', json={'status': args.status})
        elif args.command == 'events':
            response = client.get(f'{base}/api/tasks/{args.task_id}/events')
        elif args.command == 'chat':
            response = client.post(f'{base}/api/chats/{args.chat_id}/messages', json={'content': args.content})
        else:
            parser.error(f'unsupported command: {args.command}')
            return 2

    if response.status_code >= 400:
        print(f'HTTP {response.status_code}: {response.text}', file=sys.stderr)
        return 1

    _print_json(response.json())
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
