import os
import sys
import json
import importlib

import pytest

from IpcFileSystem import IpcFileSystem

BIN = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'bin')


@pytest.fixture
def cli(tmp_path):
    sys.path.insert(0, BIN)
    module = importlib.import_module('TaskDaemon')
    sys.path.remove(BIN)

    config = {
        'daemon': {'tmpdir': str(tmp_path / 'ipc'), 'pidfile': str(tmp_path / 'td.pid')},
        'log': {'file': str(tmp_path / 'td.log')},
        'tasks': {
            'poc': {'queue': 'PocTask:PocQueue', 'executor': 'PocTask:sleep_job'},
            'report': {'queue': 'PocTask:PocQueue', 'executor': 'PocTask:sleep_job', 'process': {'type': 'child'}},
        },
    }
    path = tmp_path / 'taskdaemon.json'
    path.write_text(json.dumps(config))
    return module, str(path)


def test_status_without_daemon(cli, capsys):
    module, config = cli
    assert module.main(['-c', config, '-a', 'status']) == 0
    assert 'Daemon not running' in capsys.readouterr().out


def test_status_with_daemon_pid(cli, tmp_path, logger, capsys):
    module, config = cli
    IpcFileSystem(logger, str(tmp_path / 'ipc')).set('pid', os.getpid())
    assert module.main(['-c', config, '-a', 'status']) == 0

    out = capsys.readouterr().out
    assert 'Daemon not running' not in out
    assert 'No processes!' in out


def test_log_file_option_overrides_config(cli, tmp_path, capsys):
    module, config = cli
    path = str(tmp_path / 'other.log')
    assert module.main(['-c', config, '-l', path, '--settings']) == 0

    settings = json.loads(capsys.readouterr().out)
    assert settings['log']['file'] == path


def test_stop_without_daemon(cli, capsys):
    module, config = cli
    assert module.main(['-c', config, '-a', 'stop']) == 0
    assert 'not running' in capsys.readouterr().out


def test_list_tasks(cli, capsys):
    module, config = cli
    assert module.main(['-c', config, '--list-tasks', '-t', '^rep']) == 0

    out = capsys.readouterr().out
    assert 'Tasks (1)' in out
    assert 'report' in out
    assert 'process: child x1' in out


def test_settings(cli, capsys):
    module, config = cli
    assert module.main(['-c', config, '--settings']) == 0

    settings = json.loads(capsys.readouterr().out)
    assert settings['daemon']['process']['type'] == 'fork'
    assert settings['name'] == 'TaskDaemon'


def test_invalid_config_reports_error(cli, tmp_path, capsys):
    module, _ = cli
    path = tmp_path / 'bad.json'
    path.write_text('{')
    assert module.main(['-c', str(path)]) == 2
    assert 'TaskDaemon:' in capsys.readouterr().err
