import pytest

from solders.hash import Hash  # type: ignore
from solders.keypair import Keypair  # type: ignore
from solders.pubkey import Pubkey  # type: ignore


class FakeLedger:
    """In-memory ledger. Tests script failures through the public lists."""

    def __init__(self, balance: int = 1_000_000):
        self.balance = balance
        self.send_errors = []
        self.confirm_results = [True]
        self.blockhash_error = None
        self.block_height = 0
        self.blockhashes = []
        self.sent = []
        self.calls = []

    def fetch_blockhash(self):
        self.calls.append("fetch_blockhash")
        if self.blockhash_error is not None:
            raise self.blockhash_error
        blockhash = Hash.new_unique()
        self.blockhashes.append(blockhash)
        return blockhash, 1_000 + len(self.blockhashes)

    def get_balance(self, pubkey):
        self.calls.append("get_balance")
        return self.balance

    def get_block_height(self):
        self.calls.append("get_block_height")
        if isinstance(self.block_height, Exception):
            raise self.block_height
        return self.block_height

    def send(self, txn):
        self.calls.append("send")
        self.sent.append(txn)
        if self.send_errors:
            error = self.send_errors.pop(0)
            if error is not None:
                raise error
        return txn.signatures[0]

    def confirm(self, signature):
        self.calls.append("confirm")
        result = self.confirm_results.pop(0) if len(self.confirm_results) > 1 else self.confirm_results[0]
        if isinstance(result, Exception):
            raise result
        return result


class FakeClock:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def keypair():
    return Keypair()


@pytest.fixture
def references():
    return [Pubkey.new_unique(), Pubkey.new_unique()]


@pytest.fixture
def make_ledger():
    return FakeLedger
