#!/usr/bin/env python3
"""
Visual Delivery CLI.

Usage:
    visual-delivery serve                                  # Run the delivery server
    visual-delivery await-feedback --title T \\
        --agent-session-id S [--thread-id X]               # Block until reviewed

``await-feedback`` prints exactly one JSON line on stdout describing the
outcome. Logs go to stderr.
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from visual_delivery import __version__
from visual_delivery.client import DeliveryClient
from visual_delivery.config import DEFAULT_DATA_DIR, DEFAULT_HOST, DEFAULT_PORT, ServerConfig, discover_port
from visual_delivery.errors import DeliveryError, ValidationError
from visual_delivery.models import content_to_dict, parse_content
from visual_delivery.waiter import DEFAULT_TIMEOUT, FeedbackWaiter, WaitRequest, WaitState

logger = logging.getLogger(__name__)


# ============================================================================
# Helpers
# ============================================================================

def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )


def emit_json(result: dict):
    sys.stdout.write(json.dumps(result) + '\n')
    sys.stdout.flush()


class CommandParser(argparse.ArgumentParser):
    """
    Argument parser whose usage errors can be reported as the JSON result line.

    With ``json_errors`` set, a bad argument prints usage to stderr, emits
    ``{"status": "error", ...}`` on stdout and exits 1.
    """

    json_errors = False

    def error(self, message):
        if not self.json_errors:
            super().error(message)
        self.print_usage(sys.stderr)
        emit_json({'status': WaitState.ERROR.value, 'message': message})
        self.exit(1)


def _read_text(path: str, flag: str) -> str:
    try:
        return Path(path).read_text()
    except OSError as e:
        raise ValidationError(f"Cannot read {flag} {path}: {e}")


def build_content(args) -> dict:
    """Content payload from the mutually exclusive content flags."""
    if args.ui_spec is not None or args.ui_spec_file is not None:
        if args.ui_spec is not None:
            raw, flag = args.ui_spec, '--ui-spec'
        else:
            raw, flag = _read_text(args.ui_spec_file, '--ui-spec-file'), '--ui-spec-file'
        try:
            ui_spec = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValidationError(f"{flag} is not valid JSON: {e}")
        content = {'type': 'ui_spec', 'ui_spec': ui_spec}
    elif args.html is not None:
        content = {'type': 'generated_html', 'html': args.html}
    elif args.html_file is not None:
        content = {'type': 'generated_html', 'html': _read_text(args.html_file, '--html-file')}
    else:
        content = {
            'type': 'ui_spec',
            'ui_spec': {'title': args.title or '', 'blocks': []},
        }
    return content_to_dict(parse_content(content))


# ============================================================================
# Commands
# ============================================================================

def cmd_serve(args) -> int:
    from visual_delivery.server import serve

    config = ServerConfig(
        data_dir=Path(args.data_dir),
        host=args.host,
        port=args.port,
    )
    logger.info(f"Serving {config.data_dir} at {config.base_url}")
    serve(config, log_level='debug' if args.verbose else 'info')
    return 0


def cmd_await_feedback(args) -> int:
    try:
        content = build_content(args)
    except DeliveryError as e:
        emit_json({'status': WaitState.ERROR.value, 'message': e.message})
        return 1

    metadata = {}
    if args.project_name:
        metadata['project_name'] = args.project_name
    if args.task_name:
        metadata['task_name'] = args.task_name

    port = args.port if args.port is not None else discover_port(Path(args.data_dir))
    client = DeliveryClient.for_port(port, host=args.host)
    request = WaitRequest(
        title=args.title,
        agent_session_id=args.agent_session_id,
        thread_id=args.thread_id,
        content=content,
        metadata=metadata,
        timeout=args.timeout,
    )
    waiter = FeedbackWaiter(client, request, emit=emit_json)

    def _handle_signal(signum, frame):
        waiter.interrupt('interrupted')

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    result = waiter.run()
    return 1 if result['status'] == WaitState.ERROR.value else 0


# ============================================================================
# Entry point
# ============================================================================

def build_parser(json_errors: bool = False) -> argparse.ArgumentParser:
    parser = CommandParser(
        prog='visual-delivery',
        description='Visual Delivery - review deliveries and feedback for coding agents',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  visual-delivery serve --port 3847
  visual-delivery await-feedback --title "Login page" --agent-session-id s1
  visual-delivery await-feedback --title "Report" --agent-session-id s1 --html-file out.html
'''
    )
    parser.json_errors = json_errors
    parser.add_argument('--version', action='version', version=f'visual-delivery {__version__}')
    parser.add_argument('--verbose', '-v', action='store_true', help='Verbose logging')

    subparsers = parser.add_subparsers(dest='command')

    # serve
    serve_p = subparsers.add_parser('serve', help='Run the delivery server')
    serve_p.add_argument('--data-dir', default=str(DEFAULT_DATA_DIR))
    serve_p.add_argument('--host', default=DEFAULT_HOST)
    serve_p.add_argument('--port', type=int, default=DEFAULT_PORT)

    # await-feedback
    await_p = subparsers.add_parser('await-feedback', help='Create a blocking delivery and wait for feedback')
    await_p.json_errors = True
    await_p.add_argument('--title', '-t', help='Delivery title')
    await_p.add_argument('--agent-session-id', help='Agent session owning the delivery')
    await_p.add_argument('--thread-id', help='Conversation thread (generated if omitted)')
    await_p.add_argument('--port', type=int, help='Server port (default: discovered from --data-dir)')
    await_p.add_argument('--host', default='localhost')
    await_p.add_argument('--timeout', type=float, default=DEFAULT_TIMEOUT, help='Seconds to wait')
    await_p.add_argument('--data-dir', default=str(DEFAULT_DATA_DIR))
    await_p.add_argument('--project-name')
    await_p.add_argument('--task-name')
    content_group = await_p.add_mutually_exclusive_group()
    content_group.add_argument('--ui-spec', help='UI spec as a JSON string')
    content_group.add_argument('--ui-spec-file', help='Path to a UI spec JSON file')
    content_group.add_argument('--html', help='Generated HTML string')
    content_group.add_argument('--html-file', help='Path to a generated HTML file')

    return parser


def main(argv=None):
    if argv is None:
        argv = sys.argv[1:]
    # Errors before the subcommand is known still owe the caller a JSON line
    parser = build_parser(json_errors='await-feedback' in argv)
    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    if args.command == 'serve':
        sys.exit(cmd_serve(args))
    elif args.command == 'await-feedback':
        try:
            sys.exit(cmd_await_feedback(args))
        except Exception as e:
            logger.exception('Unexpected error')
            emit_json({'status': WaitState.ERROR.value, 'message': f"Unexpected error: {e}"})
            sys.exit(1)
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == '__main__':
    main()
