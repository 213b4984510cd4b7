import os
import pytest
import subprocess
from pathlib import Path
from unittest.mock import Mock, patch
from buildphp import ShellCmd, CommandError, BuildError, ValidationError, logging

@pytest.fixture
def shell():
    shell = ShellCmd()
    shell.log = Mock(spec=logging.Logger)
    return shell

def test_cmd_success(shell):
    with patch('subprocess.check_call') as mock_call:
        shell.cmd('git fetch --tags')
        # Commands without shell features are split into list
        mock_call.assert_called_once_with(['git', 'fetch', '--tags'], cwd='.', env=None)
        shell.log.info.assert_called_once_with('git fetch --tags')

def test_cmd_list(shell):
    with patch('subprocess.check_call') as mock_call:
        shell.cmd(['./configure', '--prefix=/tmp/php'], cwd='src')
        mock_call.assert_called_once_with(['./configure', '--prefix=/tmp/php'], cwd='src', env=None)
        shell.log.info.assert_called_once_with('./configure --prefix=/tmp/php')

def test_cmd_shell_features(shell):
    with patch('subprocess.check_call') as mock_call:
        shell.cmd('make && make install')
        mock_call.assert_called_once_with('make && make install', shell=True, cwd='.', env=None)

def test_cmd_env_is_layered_over_environ(shell):
    with patch('subprocess.check_call') as mock_call, \
         patch.dict(os.environ, {'KEEP_ME': '1'}):
        shell.cmd('./buildconf --force', env={'PHP_AUTOCONF': '/usr/bin/autoconf'})
        env = mock_call.call_args.kwargs['env']
        assert env['PHP_AUTOCONF'] == '/usr/bin/autoconf'
        assert env['KEEP_ME'] == '1'

def test_cmd_failure(shell):
    with patch('subprocess.check_call') as mock_call:
        mock_call.side_effect = subprocess.CalledProcessError(1, 'make')
        with pytest.raises(CommandError):
            shell.cmd('make')
        shell.log.critical.assert_called_once()

def test_get_strips_output(shell):
    with patch('subprocess.check_output') as mock_output:
        mock_output.return_value = 'php-7.4.33\n'
        assert shell.get('git tag -l php-7.4.33', cwd='src') == 'php-7.4.33'
        mock_output.assert_called_once_with(
            ['git', 'tag', '-l', 'php-7.4.33'], encoding='utf8', shell=False, cwd='src'
        )

def test_get_failure(shell):
    with patch('subprocess.check_output') as mock_output:
        mock_output.side_effect = subprocess.CalledProcessError(128, 'git')
        with pytest.raises(CommandError):
            shell.get('git tag -l php-7.4.33')

def test_fail(shell):
    with pytest.raises(BuildError):
        shell.fail("Error message")
    shell.log.critical.assert_called_once_with("Error message")

def test_fail_formats_args(shell):
    with pytest.raises(BuildError, match="missing 7.4.33"):
        shell.fail("missing %s", "7.4.33")

def test_git_clone_basic(shell):
    with patch.object(shell, 'cmd') as mock_cmd:
        shell.git_clone("https://github.com/php/php-src.git")
        mock_cmd.assert_called_once_with(
            ['git', 'clone', 'https://github.com/php/php-src.git'],
            cwd="."
        )

def test_git_clone_full(shell):
    with patch.object(shell, 'cmd') as mock_cmd:
        shell.git_clone(
            "https://github.com/php/php-src.git",
            branch="master",
            directory="php-src",
            depth=1,
        )
        expected_cmd = [
            'git', 'clone', '--depth', '1', '--branch', 'master',
            'https://github.com/php/php-src.git', 'php-src'
        ]
        mock_cmd.assert_called_once_with(expected_cmd, cwd=".")

def test_git_clone_invalid_url(shell):
    with patch.object(shell, 'cmd') as mock_cmd:
        with pytest.raises(ValidationError):
            shell.git_clone("/local/php-src")
        mock_cmd.assert_not_called()

def test_remove_folder(shell, tmp_path):
    target = tmp_path / "versions" / "7.4.33"
    (target / "bin").mkdir(parents=True)
    (target / "bin" / "php").write_text("#!/bin/sh\n")
    shell.remove(target)
    assert not target.exists()
    assert (tmp_path / "versions").exists()

def test_remove_file(shell, tmp_path):
    target = tmp_path / "configure"
    target.write_text("")
    shell.remove(target)
    assert not target.exists()

def test_remove_missing_is_silent(shell, tmp_path):
    shell.remove(tmp_path / "autom4te.cache", silent=True)
    shell.log.debug.assert_not_called()

def test_makedirs(shell, tmp_path):
    target = tmp_path / "a" / "b"
    shell.makedirs(target)
    assert target.is_dir()
    shell.makedirs(target)
