"""
Tests for the CLI module.
"""

import json
import subprocess
import sys
import time

import pytest

from conftest import free_port
from visual_delivery.cli import build_content, build_parser


def _run(*args, timeout=60):
    return subprocess.run(
        [sys.executable, '-m', 'visual_delivery.cli', *args],
        capture_output=True,
        text=True,
        timeout=timeout,
    )


class TestCLICommands:
    """Test CLI commands via subprocess."""

    def test_cli_help(self):
        """Test --help flag."""
        result = _run('--help')
        assert result.returncode == 0
        assert 'await-feedback' in result.stdout

    def test_cli_version(self):
        """Test --version flag."""
        result = _run('--version')
        assert result.returncode == 0
        assert 'visual-delivery' in result.stdout

    def test_missing_title(self, temp_data_dir):
        """Test a missing --title prints one JSON error line and exits 1."""
        result = _run('await-feedback', '--agent-session-id', 's1', '--data-dir', str(temp_data_dir))
        assert result.returncode == 1
        lines = result.stdout.strip().splitlines()
        assert len(lines) == 1
        payload = json.loads(lines[0])
        assert payload['status'] == 'error'
        assert '--title' in payload['message']

    def test_invalid_ui_spec_json(self):
        result = _run('await-feedback', '--title', 'Plan', '--agent-session-id', 's1', '--ui-spec', '{nope')
        assert result.returncode == 1
        assert json.loads(result.stdout)['status'] == 'error'

    def test_server_unreachable(self, temp_data_dir):
        """Test connectivity failure prints an error line and exits 1."""
        result = _run(
            'await-feedback', '--title', 'Plan', '--agent-session-id', 's1',
            '--host', '127.0.0.1', '--port', str(free_port()), '--data-dir', str(temp_data_dir),
        )
        assert result.returncode == 1
        payload = json.loads(result.stdout.strip())
        assert payload['status'] == 'error'
        assert payload['agent_session_id'] == 's1'
        assert payload['thread_id'].startswith('thread-')

    def test_content_flags_exclusive(self):
        """Test two content flags give one JSON error line and exit 1."""
        result = _run('await-feedback', '--title', 'Plan', '--html', '<p/>', '--ui-spec', '{}')
        assert result.returncode == 1
        lines = result.stdout.strip().splitlines()
        assert len(lines) == 1
        payload = json.loads(lines[0])
        assert payload['status'] == 'error'
        assert 'not allowed with argument' in payload['message']

    @pytest.mark.parametrize('bad_args', [
        ('--timeout', 'abc'),
        ('--port', 'eighty'),
        ('--no-such-flag',),
    ])
    def test_bad_arguments_report_json(self, bad_args):
        """Test argument errors still print exactly one JSON error line and exit 1."""
        result = _run('await-feedback', '--title', 'T', '--agent-session-id', 's1', *bad_args)
        assert result.returncode == 1
        lines = result.stdout.strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])['status'] == 'error'

    def test_serve_bad_port_is_usage_error(self):
        """Test the server command keeps plain argparse errors."""
        result = _run('serve', '--port', 'eighty')
        assert result.returncode == 2
        assert result.stdout == ''


class TestBuildContent:
    """Content flag handling."""

    def _args(self, *extra):
        return build_parser().parse_args(['await-feedback', '--title', 'Plan', *extra])

    def test_default_is_minimal_ui_spec(self):
        content = build_content(self._args())
        assert content == {'type': 'ui_spec', 'ui_spec': {'title': 'Plan', 'blocks': []}}

    def test_html_string(self):
        assert build_content(self._args('--html', '<p>x</p>')) == {'type': 'generated_html', 'html': '<p>x</p>'}

    def test_files(self, temp_data_dir):
        spec_file = temp_data_dir / 'spec.json'
        spec_file.write_text('{"blocks": [1]}')
        html_file = temp_data_dir / 'out.html'
        html_file.write_text('<h1>Hi</h1>')

        assert build_content(self._args('--ui-spec-file', str(spec_file)))['ui_spec'] == {'blocks': [1]}
        assert build_content(self._args('--html-file', str(html_file)))['html'] == '<h1>Hi</h1>'

    def test_missing_file(self, temp_data_dir):
        from visual_delivery.errors import ValidationError

        with pytest.raises(ValidationError):
            build_content(self._args('--html-file', str(temp_data_dir / 'nope.html')))


class TestAwaitFeedbackLive:
    """await-feedback against a running server."""

    def _args(self, server, *extra):
        return (
            'await-feedback', '--title', 'Plan', '--agent-session-id', 's1', '--thread-id', 't1',
            '--host', '127.0.0.1', '--port', str(server.port), *extra,
        )

    def test_timeout_not_before_deadline(self, live_server):
        """Test an unanswered wait ends in timeout at or after the deadline."""
        start = time.monotonic()
        result = _run(*self._args(live_server, '--timeout', '1'))
        elapsed = time.monotonic() - start

        assert result.returncode == 0
        payload = json.loads(result.stdout.strip())
        assert payload['status'] == 'timeout'
        assert elapsed >= 1.0

    def test_second_upsert_replaces_waiting_process(self, live_server):
        """Test a waiting process reports replaced when a newer delivery takes its session."""
        first = subprocess.Popen(
            [sys.executable, '-m', 'visual_delivery.cli', *self._args(live_server, '--timeout', '30')],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
        )
        try:
            deadline = time.monotonic() + 20
            active_path = live_server.data_dir / 'data' / 'sessions' / 's1' / 'alignment' / 'active.json'
            while not active_path.exists() and time.monotonic() < deadline:
                time.sleep(0.1)
            assert active_path.exists()

            second = _run(*self._args(live_server, '--timeout', '5'))
            stdout, _ = first.communicate(timeout=30)
        finally:
            if first.poll() is None:
                first.kill()

        payload = json.loads(stdout.strip())
        assert first.returncode == 0
        assert payload['status'] == 'replaced'
        assert json.loads(second.stdout.strip())['status'] == 'timeout'
