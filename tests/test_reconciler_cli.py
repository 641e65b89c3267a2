"""Tests for reconciler/cli.py verb handlers.

Each test runs in a temporary working directory with a reconciler.yaml
that serves every kind from the file provider (see conftest.workspace).
"""

import json
import signal
from unittest.mock import MagicMock, patch

import yaml

from reconciler.cli import (
    EXIT_FAILED,
    EXIT_INVALID,
    EXIT_OK,
    _cancel_on_interrupt,
    apply_main,
    destroy_main,
    plan_main,
    show_main,
    validate_main,
)

BUCKET_FILE = ('resources', 'object-store-bucket', 'logs.json')
POLICY_FILE = ('resources', 'key-value-policy', 'logs-policy.json')


def _read(workspace, parts):
    return json.loads(workspace.joinpath(*parts).read_text())


class TestPlanVerb:
    """Tests for 'plan'."""

    def test_fresh_plan(self, workspace, capsys):
        assert plan_main(['-f', 'audit.yaml']) == EXIT_OK
        out = capsys.readouterr().out
        assert 'object-store-bucket.logs' in out
        assert 'Plan: 2 to create, 0 to update, 0 to delete.' in out
        assert not (workspace / 'resources').exists()
        assert list((workspace / '.states').iterdir()) == []

    def test_json_output(self, workspace, capsys):
        assert plan_main(['-f', 'audit.yaml', '--json-output']) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data['verb'] == 'plan'
        assert data['plan']['summary']['create'] == 2
        assert [e['id'] for e in data['plan']['entries']] == [
            'object-store-bucket.logs', 'key-value-policy.logs-policy']

    def test_missing_document(self, workspace, capsys):
        assert plan_main([]) == EXIT_INVALID
        assert 'resource document' in capsys.readouterr().err

    def test_cycle_is_invalid(self, workspace, capsys):
        (workspace / 'cycle.yaml').write_text(yaml.safe_dump({'resources': [
            {'kind': 'a', 'name': 'x', 'attributes': {'ref': '${b.y}'}},
            {'kind': 'b', 'name': 'y', 'attributes': {'ref': '${a.x}'}},
        ]}))
        assert plan_main(['-f', 'cycle.yaml']) == EXIT_INVALID
        assert 'Dependency cycle detected' in capsys.readouterr().err

    def test_unresolved_reference_is_invalid(self, workspace, capsys):
        (workspace / 'dangling.yaml').write_text(yaml.safe_dump({'resources': [
            {'kind': 'policy', 'name': 'p', 'attributes': {'bucket': '${bucket.missing}'}},
        ]}))
        assert plan_main(['-f', 'dangling.yaml']) == EXIT_INVALID
        assert 'bucket.missing' in capsys.readouterr().err

    def test_path_like_name_is_invalid(self, workspace, capsys):
        (workspace / 'escape.yaml').write_text(yaml.safe_dump({'resources': [
            {'kind': 'bucket', 'name': 'a/b', 'attributes': {}},
        ]}))
        assert plan_main(['-f', 'escape.yaml']) == EXIT_INVALID
        assert "must not contain '/'" in capsys.readouterr().err
        assert not (workspace / 'resources').exists()

    def test_unknown_kind_is_invalid(self, workspace, capsys):
        (workspace / 'only-buckets.yaml').write_text(yaml.safe_dump({
            'providers': {'object-store-bucket': {'type': 'file', 'root': str(workspace / 'resources')}},
        }))
        assert plan_main(['-f', 'audit.yaml', '-c', 'only-buckets.yaml']) == EXIT_INVALID
        assert "No provider registered for kind 'key-value-policy'" in capsys.readouterr().err

    def test_invalid_settings(self, workspace, capsys):
        (workspace / 'reconciler.yaml').write_text('max_retries: -1\n')
        assert plan_main(['-f', 'audit.yaml']) == EXIT_INVALID

    def test_unreadable_state_fails(self, workspace, capsys):
        states = workspace / '.states'
        states.mkdir()
        (states / 'object-store-bucket.logs.json').write_text('{broken')
        assert plan_main(['-f', 'audit.yaml']) == EXIT_FAILED
        assert 'Cannot read state file' in capsys.readouterr().err


class TestApplyVerb:
    """Tests for 'apply'."""

    def test_end_to_end(self, workspace, capsys):
        assert apply_main(['-f', 'audit.yaml']) == EXIT_OK
        out = capsys.readouterr().out
        assert 'Apply complete: 2 succeeded, 0 failed, 0 skipped.' in out

        bucket = _read(workspace, BUCKET_FILE)
        policy = _read(workspace, POLICY_FILE)
        assert bucket['bucket'] == 'audit-logs'
        assert policy['bucket'] == bucket['id']
        assert policy['arn'] == 'arn:bucket:audit-logs'
        assert (workspace / '.states' / 'object-store-bucket.logs.json').exists()
        assert (workspace / '.states' / 'key-value-policy.logs-policy.json').exists()

    def test_second_plan_is_empty(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        capsys.readouterr()
        assert plan_main(['-f', 'audit.yaml']) == EXIT_OK
        assert 'No changes.' in capsys.readouterr().out

    def test_variable_override(self, workspace):
        assert apply_main(['-f', 'audit.yaml', '--var', 'bucket_name=other-logs']) == EXIT_OK
        assert _read(workspace, BUCKET_FILE)['bucket'] == 'other-logs'
        assert _read(workspace, POLICY_FILE)['arn'] == 'arn:bucket:other-logs'

    def test_var_file(self, workspace):
        (workspace / 'prod.yaml').write_text('bucket_name: prod-logs\n')
        assert apply_main(['-f', 'audit.yaml', '--var-file', 'prod.yaml']) == EXIT_OK
        assert _read(workspace, BUCKET_FILE)['bucket'] == 'prod-logs'

    def test_changed_variable_updates(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        capsys.readouterr()
        assert apply_main(['-f', 'audit.yaml', '--var', 'bucket_name=renamed']) == EXIT_OK
        out = capsys.readouterr().out
        assert 'Plan: 0 to create, 2 to update, 0 to delete.' in out
        assert _read(workspace, POLICY_FILE)['arn'] == 'arn:bucket:renamed'

    def test_dry_run(self, workspace, capsys):
        assert apply_main(['-f', 'audit.yaml', '--dry-run']) == EXIT_OK
        assert 'Plan: 2 to create' in capsys.readouterr().out
        assert not (workspace / 'resources').exists()

    def test_failure_exit_code(self, workspace, capsys):
        # Occupy the policy's path so its create fails permanently
        workspace.joinpath(*POLICY_FILE).mkdir(parents=True)
        assert apply_main(['-f', 'audit.yaml']) == EXIT_FAILED
        out = capsys.readouterr().out
        assert 'already exists' in out
        assert 'Apply incomplete: 1 succeeded, 1 failed, 0 skipped.' in out
        assert (workspace / '.states' / 'object-store-bucket.logs.json').exists()
        assert not (workspace / '.states' / 'key-value-policy.logs-policy.json').exists()

    def test_removed_resource_deleted(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        (workspace / 'bucket-only.yaml').write_text(yaml.safe_dump({
            'name': 'audit',
            'resources': [{'kind': 'object-store-bucket', 'name': 'logs',
                           'attributes': {'bucket': 'audit-logs'}}],
        }))
        capsys.readouterr()
        assert apply_main(['-f', 'bucket-only.yaml']) == EXIT_OK
        assert '1 to delete' in capsys.readouterr().out
        assert not workspace.joinpath(*POLICY_FILE).exists()
        assert workspace.joinpath(*BUCKET_FILE).exists()

    def test_document_json(self, workspace):
        document = json.dumps({'resources': [{'kind': 'topic', 'name': 'alerts', 'attributes': {'x': 1}}]})
        assert apply_main(['--document-json', document]) == EXIT_OK
        assert _read(workspace, ('resources', 'topic', 'alerts.json'))['x'] == 1

    def test_json_output(self, workspace, capsys):
        assert apply_main(['-f', 'audit.yaml', '--json-output']) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data['success'] is True
        assert data['report']['summary'] == {'succeeded': 2, 'failed': 0, 'skipped': 0}

    def test_report_dir(self, workspace):
        assert apply_main(['-f', 'audit.yaml', '--report-dir', 'reports']) == EXIT_OK
        names = sorted(p.name for p in (workspace / 'reports').iterdir())
        assert len(names) == 2
        assert names[0].endswith('.audit.apply.passed.json')
        assert names[1].endswith('.audit.apply.passed.md')

    def test_unwritable_report_dir(self, workspace, capsys, caplog):
        """Resources are already applied; a report failure is only logged."""
        (workspace / 'reports').write_text('not a directory')
        assert apply_main(['-f', 'audit.yaml', '--report-dir', 'reports']) == EXIT_OK
        assert 'Apply complete: 2 succeeded' in capsys.readouterr().out
        assert 'Cannot write report' in caplog.text
        assert workspace.joinpath(*POLICY_FILE).exists()

    def test_concurrency_option(self, workspace):
        assert apply_main(['-f', 'audit.yaml', '--concurrency', '4']) == EXIT_OK

    def test_state_dir_option(self, workspace):
        assert apply_main(['-f', 'audit.yaml', '--state-dir', 'elsewhere']) == EXIT_OK
        assert (workspace / 'elsewhere' / 'object-store-bucket.logs.json').exists()


class TestDestroyVerb:
    """Tests for 'destroy'."""

    def test_destroy_with_yes(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        assert destroy_main(['--yes']) == EXIT_OK
        assert not workspace.joinpath(*BUCKET_FILE).exists()
        assert not workspace.joinpath(*POLICY_FILE).exists()
        assert list((workspace / '.states').iterdir()) == []

    def test_confirmation_declined(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        with patch('builtins.input', return_value='n'):
            assert destroy_main([]) == EXIT_FAILED
        assert 'Aborted.' in capsys.readouterr().out
        assert workspace.joinpath(*BUCKET_FILE).exists()

    def test_confirmation_accepted(self, workspace):
        apply_main(['-f', 'audit.yaml'])
        with patch('builtins.input', return_value='y'):
            assert destroy_main([]) == EXIT_OK
        assert not workspace.joinpath(*BUCKET_FILE).exists()

    def test_nothing_tracked(self, workspace, capsys):
        with patch('builtins.input') as mock_input:
            assert destroy_main([]) == EXIT_OK
        mock_input.assert_not_called()
        assert 'No changes.' in capsys.readouterr().out

    def test_dry_run(self, workspace):
        apply_main(['-f', 'audit.yaml'])
        assert destroy_main(['--dry-run']) == EXIT_OK
        assert workspace.joinpath(*BUCKET_FILE).exists()


class TestValidateVerb:
    """Tests for 'validate'."""

    def test_valid(self, workspace, capsys):
        assert validate_main(['-f', 'audit.yaml']) == EXIT_OK
        assert "Document 'audit' is valid (2 resources)" in capsys.readouterr().out

    def test_json(self, workspace, capsys):
        assert validate_main(['-f', 'audit.yaml', '--json-output']) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert data == {'name': 'audit', 'valid': True,
                        'order': ['object-store-bucket.logs', 'key-value-policy.logs-policy']}

    def test_invalid_document(self, workspace, capsys):
        (workspace / 'bad.yaml').write_text('resources:\n  - kind: bucket\n')
        assert validate_main(['-f', 'bad.yaml']) == EXIT_INVALID
        assert 'missing required field: name' in capsys.readouterr().err

    def test_does_not_touch_state(self, workspace):
        validate_main(['-f', 'audit.yaml'])
        assert not (workspace / '.states').exists()


class TestShowVerb:
    """Tests for 'show'."""

    def test_empty(self, workspace, capsys):
        assert show_main([]) == EXIT_OK
        assert 'No resources tracked' in capsys.readouterr().out

    def test_after_apply(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        capsys.readouterr()
        assert show_main([]) == EXIT_OK
        out = capsys.readouterr().out
        assert 'object-store-bucket.logs  id=object-store-bucket/logs.json' in out
        assert 'bucket = "audit-logs"' in out

    def test_json(self, workspace, capsys):
        apply_main(['-f', 'audit.yaml'])
        capsys.readouterr()
        assert show_main(['--json-output']) == EXIT_OK
        data = json.loads(capsys.readouterr().out)
        assert [s['id'] for s in data] == ['key-value-policy.logs-policy', 'object-store-bucket.logs']
        assert data[0]['dependencies'] == ['object-store-bucket.logs']


class TestInterruptHandling:
    """SIGINT during a run cancels instead of killing the process."""

    def test_sigint_cancels_engine(self):
        engine = MagicMock()
        before = signal.getsignal(signal.SIGINT)
        with _cancel_on_interrupt(engine):
            signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
        engine.cancel.assert_called_once()
        assert signal.getsignal(signal.SIGINT) is before
