import pytest

from gitsigs import SignatureRecord, PolicyError, count_trusted, check_policy

from typing import List


def _rec(keyid: str, trust: str = 'ULTIMATE', status: str = 'VALIDSIG') -> SignatureRecord:
    return SignatureRecord(keyid=keyid, status=status, trust=trust, date='1641392521', author='Someone')


class TestCountTrusted:

    def test_counts_distinct_keys(self) -> None:
        records = [_rec('AAAA'), _rec('BBBB'), _rec('AAAA'), _rec('AAAA')]
        assert count_trusted(records) == 2

    def test_ignores_lower_trust(self) -> None:
        records = [_rec('AAAA'), _rec('BBBB', trust='FULLY'), _rec('CCCC', trust='UNDEFINED')]
        assert count_trusted(records) == 1

    def test_ignores_invalid_signatures(self) -> None:
        records = [_rec('AAAA', status='BADSIG'), _rec('BBBB', status='unknown', trust='unknown')]
        assert count_trusted(records) == 0

    def test_trust_level_is_configurable(self) -> None:
        records = [_rec('AAAA'), _rec('BBBB', trust='FULLY'), _rec('CCCC', trust='FULLY')]
        assert count_trusted(records, 'FULLY') == 2
        assert count_trusted(records, 'fully') == 2


class TestCheckPolicy:

    def test_threshold_met(self) -> None:
        records = [_rec('AAAA'), _rec('BBBB')]
        assert check_policy(records, mincount=2) == 2

    def test_same_key_twice_is_one_vote(self) -> None:
        """Two signatures from one key never satisfy a threshold of two."""
        records = [_rec('AAAA'), _rec('AAAA')]
        with pytest.raises(PolicyError, match='1/2'):
            check_policy(records, mincount=2)

    def test_no_records(self) -> None:
        records: List[SignatureRecord] = list()
        with pytest.raises(PolicyError):
            check_policy(records)

    def test_zero_required(self) -> None:
        assert check_policy([], mincount=0) == 0

    def test_failure_mentions_local_keyring(self, caplog: pytest.LogCaptureFixture) -> None:
        with pytest.raises(PolicyError):
            check_policy([_rec('AAAA', trust='MARGINAL')], mincount=1)
        assert 'not present or trusted in your local keyring' in caplog.text
        assert 'git signatures import' in caplog.text
