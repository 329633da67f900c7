import time

from pathlib import Path

import pytest

from gitsigs import RepoContext, NoKeyError, check_secret_key

from typing import Dict, List, Optional


class FakeKeyring:
    """Returns canned list_keys() output for any query."""

    def __init__(self, seckeys: List[Dict[str, str]]):
        self.seckeys = seckeys

    def list_keys(self, secret: bool = False, keys: Optional[List[str]] = None) -> List[Dict[str, str]]:
        assert secret
        return self.seckeys


def _seckey(cap: str = 'scSC', expires: str = '') -> Dict[str, str]:
    return {'type': 'sec', 'fingerprint': 'A' * 40, 'keyid': 'A' * 16, 'cap': cap, 'expires': expires}


@pytest.fixture
def ctx(tmp_path: Path) -> RepoContext:
    return RepoContext(str(tmp_path), {})


def _use_keyring(monkeypatch: pytest.MonkeyPatch, seckeys: List[Dict[str, str]]) -> None:
    keyring = FakeKeyring(seckeys)
    monkeypatch.setattr(RepoContext, 'keyring', lambda self: keyring)


class TestCheckSecretKey:

    def test_usable_key(self, monkeypatch: pytest.MonkeyPatch, ctx: RepoContext) -> None:
        future = str(int(time.time()) + 86400)
        _use_keyring(monkeypatch, [_seckey(expires=future)])
        check_secret_key(ctx, 'signer@example.com')

    def test_no_secret_key(self, monkeypatch: pytest.MonkeyPatch, ctx: RepoContext,
                           caplog: pytest.LogCaptureFixture) -> None:
        _use_keyring(monkeypatch, [])
        with pytest.raises(NoKeyError, match='No secret key'):
            check_secret_key(ctx, 'signer@example.com')
        assert 'No usable secret key found' in caplog.text

    def test_expired_key(self, monkeypatch: pytest.MonkeyPatch, ctx: RepoContext,
                         caplog: pytest.LogCaptureFixture) -> None:
        _use_keyring(monkeypatch, [_seckey(expires='1000000000')])
        with pytest.raises(NoKeyError, match='cannot be used for signing'):
            check_secret_key(ctx, 'signer@example.com')
        assert 'expired or not capable of signing' in caplog.text

    def test_key_without_signing_capability(self, monkeypatch: pytest.MonkeyPatch, ctx: RepoContext) -> None:
        # Signing subkey gone: only certify and encrypt remain usable
        _use_keyring(monkeypatch, [_seckey(cap='scEC')])
        with pytest.raises(NoKeyError, match='cannot be used for signing'):
            check_secret_key(ctx, 'signer@example.com')

    def test_any_usable_match_is_enough(self, monkeypatch: pytest.MonkeyPatch, ctx: RepoContext) -> None:
        _use_keyring(monkeypatch, [_seckey(expires='1000000000'), _seckey(cap='scESC')])
        check_secret_key(ctx, 'signer@example.com')
