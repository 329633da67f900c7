import os
import shutil
import subprocess
from pathlib import Path

import pytest

import gitsigs

from typing import Callable, Dict, Generator, List


@pytest.fixture(autouse=True)
def clear_config_cache() -> Generator[None, None, None]:
    """Each test sees freshly loaded git config."""
    gitsigs.CONFIGCACHE.clear()
    yield
    gitsigs.CONFIGCACHE.clear()


@pytest.fixture
def sample_status_good() -> bytes:
    """Status output of a good signature by an ultimately trusted key."""
    return b"""[GNUPG:] NEWSIG
[GNUPG:] KEY_CONSIDERED 0DB4E3F1A2B3C4D5E6F708192A3B4C5D6E7F8091 0
[GNUPG:] SIG_ID 3Pd4Yd9u8dBVYkS1xJvN1pYv9Xo 2022-01-05 1641392521
[GNUPG:] GOODSIG 2A3B4C5D6E7F8091 Test Signer <signer@example.com>
[GNUPG:] VALIDSIG 0DB4E3F1A2B3C4D5E6F708192A3B4C5D6E7F8091 2022-01-05 1641392521 0 4 0 22 8 00 0DB4E3F1A2B3C4D5E6F708192A3B4C5D6E7F8091
[GNUPG:] TRUST_ULTIMATE 0 pgp
"""


@pytest.fixture
def sample_status_nokey() -> bytes:
    """Status output when the public key is not in the keyring."""
    return b"""[GNUPG:] NEWSIG
[GNUPG:] ERRSIG 2A3B4C5D6E7F8091 22 8 00 1641392521 9 0DB4E3F1A2B3C4D5E6F708192A3B4C5D6E7F8091
[GNUPG:] NO_PUBKEY 2A3B4C5D6E7F8091
"""


@pytest.fixture
def git_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Isolate git from the user's configuration and give it an identity."""
    if shutil.which('git') is None:
        pytest.skip('git is not installed')
    home = tmp_path / 'home'
    home.mkdir()
    monkeypatch.setenv('HOME', str(home))
    monkeypatch.setenv('GIT_CONFIG_NOSYSTEM', '1')
    monkeypatch.setenv('GIT_CONFIG_GLOBAL', os.devnull)
    monkeypatch.setenv('GIT_AUTHOR_NAME', 'Test Author')
    monkeypatch.setenv('GIT_AUTHOR_EMAIL', 'author@example.com')
    monkeypatch.setenv('GIT_COMMITTER_NAME', 'Test Author')
    monkeypatch.setenv('GIT_COMMITTER_EMAIL', 'author@example.com')


@pytest.fixture
def run_git() -> Callable[..., str]:
    def _run_git(path: Path, *args: str) -> str:
        cp = subprocess.run(['git', '-C', str(path)] + list(args), capture_output=True, check=True)
        return cp.stdout.decode().strip()
    return _run_git


def _make_commits(path: Path, run_git: Callable[..., str]) -> None:
    (path / 'hello.txt').write_text('hello\n')
    run_git(path, 'add', 'hello.txt')
    run_git(path, 'commit', '-q', '-m', 'First commit')
    with open(path / 'hello.txt', 'a') as fh:
        fh.write('world\n')
    run_git(path, 'commit', '-q', '-a', '-m', 'Second commit')


@pytest.fixture
def git_repo(tmp_path: Path, git_env: None, run_git: Callable[..., str]) -> Path:
    """A work tree with two commits, each changing hello.txt."""
    repo = tmp_path / 'repo'
    repo.mkdir()
    run_git(repo, 'init', '-q')
    _make_commits(repo, run_git)
    return repo


@pytest.fixture
def cloned_repos(tmp_path: Path, git_env: None, run_git: Callable[..., str]) -> List[Path]:
    """Two clones of the same bare remote."""
    src = tmp_path / 'src'
    src.mkdir()
    run_git(src, 'init', '-q')
    _make_commits(src, run_git)
    remote = tmp_path / 'remote.git'
    subprocess.run(['git', 'clone', '-q', '--bare', str(src), str(remote)], check=True)
    clones = list()
    for name in ('alice', 'bob'):
        clone = tmp_path / name
        subprocess.run(['git', 'clone', '-q', str(remote), str(clone)], check=True)
        clones.append(clone)
    return clones


@pytest.fixture(scope='session')
def gpg_key(tmp_path_factory: pytest.TempPathFactory) -> Generator[Dict[str, str], None, None]:
    """A throwaway GnuPG home holding one passphrase-less signing key."""
    if shutil.which('gpg') is None:
        pytest.skip('gpg is not installed')
    home = tmp_path_factory.mktemp('gnupg')
    home.chmod(0o700)
    gpgargs = ['gpg', '--homedir', str(home), '--batch']
    subprocess.run(gpgargs + ['--pinentry-mode', 'loopback', '--passphrase', '',
                              '--quick-gen-key', 'Test Signer <signer@example.com>', 'ed25519', 'sign', 'never'],
                   capture_output=True, check=True)
    cp = subprocess.run(gpgargs + ['--with-colons', '--list-secret-keys'], capture_output=True, check=True)
    keyid = fingerprint = ''
    for line in cp.stdout.decode().splitlines():
        fields = line.split(':')
        if fields[0] == 'sec':
            keyid = fields[4]
        elif fields[0] == 'fpr' and not fingerprint:
            fingerprint = fields[9]

    yield {'home': str(home), 'keyid': keyid, 'fingerprint': fingerprint}

    if shutil.which('gpgconf'):
        subprocess.run(['gpgconf', '--homedir', str(home), '--kill', 'gpg-agent'], capture_output=True)


@pytest.fixture
def signer(gpg_key: Dict[str, str], monkeypatch: pytest.MonkeyPatch) -> Dict[str, str]:
    """Point gpg at the throwaway home for the duration of a test."""
    monkeypatch.setenv('GNUPGHOME', gpg_key['home'])
    return gpg_key


@pytest.fixture
def repo_ctx(git_repo: Path) -> gitsigs.RepoContext:
    return gitsigs.RepoContext.discover(str(git_repo))
