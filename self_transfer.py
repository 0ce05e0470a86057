import random
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Protocol, Sequence, Tuple

from loguru import logger

from solana.exceptions import SolanaRpcException
from solana.rpc.api import Client
from solana.rpc.commitment import Commitment, Confirmed, Finalized
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts

from solders.hash import Hash  # type: ignore
from solders.instruction import AccountMeta, Instruction  # type: ignore
from solders.keypair import Keypair  # type: ignore
from solders.message import MessageV0  # type: ignore
from solders.pubkey import Pubkey  # type: ignore
from solders.signature import Signature  # type: ignore
from solders.system_program import TransferParams, transfer  # type: ignore
from solders.transaction import VersionedTransaction  # type: ignore
from solders.transaction_status import TransactionConfirmationStatus  # type: ignore

LAMPORTS_PER_SOL = 1_000_000_000
DEFAULT_FEE_LAMPORTS = 5_000
DEFAULT_MARGIN_LAMPORTS = 1_000
MIN_TRANSFER_LAMPORTS = 1

_BLOCKHASH_EXPIRED = re.compile(r"blockhash\s*not\s*found|blockhash.*expired|BlockhashNotFound", re.IGNORECASE)
_ALREADY_PROCESSED = re.compile(r"already\s*(been\s*)?processed|AlreadyProcessed", re.IGNORECASE)


class SubmissionOutcome(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class SelfTransferError(Exception):
    """Base class for every terminal failure of a run.

    ``exit_code`` is what the runner exits with, ``outcome`` is the
    submission outcome the failure is reported as.
    """

    exit_code = 1
    outcome = SubmissionOutcome.FAILED

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InsufficientFunds(SelfTransferError):
    exit_code = 2


class NetworkUnavailable(SelfTransferError):
    exit_code = 3


class Rejected(SelfTransferError):
    exit_code = 4

    @property
    def blockhash_expired(self) -> bool:
        return bool(_BLOCKHASH_EXPIRED.search(self.reason))

    @property
    def already_processed(self) -> bool:
        return bool(_ALREADY_PROCESSED.search(self.reason))


class TimedOut(SelfTransferError):
    exit_code = 5
    outcome = SubmissionOutcome.TIMED_OUT


class InvalidAddress(SelfTransferError):
    exit_code = 6


def lamports_to_sol(lamports: int) -> str:
    return f"◎{lamports / LAMPORTS_PER_SOL:.9f}"


def describe(e: Exception) -> str:
    # solana-py wraps transport errors without exception args
    return getattr(e, "error_msg", None) or str(e) or type(e).__name__


def parse_address(text: str) -> Pubkey:
    try:
        return Pubkey.from_string(text)
    except ValueError as e:
        raise InvalidAddress(f"invalid address {text!r}: {describe(e)}") from e


def parse_addresses(texts: Iterable[str]) -> List[Pubkey]:
    return [parse_address(text) for text in texts]


class Ledger(Protocol):
    """What the pipeline needs from the network."""

    def fetch_blockhash(self) -> Tuple[Hash, int]: ...

    def get_balance(self, pubkey: Pubkey) -> int: ...

    def get_block_height(self) -> int: ...

    def send(self, txn: VersionedTransaction) -> Signature: ...

    def confirm(self, signature: Signature) -> bool: ...


class SolanaLedger:
    """`Ledger` backed by a solana-py JSON RPC client."""

    def __init__(
        self,
        rpc_url: str,
        commitment: Commitment = Confirmed,
        skip_preflight: bool = False,
        client: Optional[Client] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.skip_preflight = skip_preflight
        self.client = client if client is not None else Client(rpc_url, commitment=commitment)

    def fetch_blockhash(self) -> Tuple[Hash, int]:
        try:
            resp = self.client.get_latest_blockhash(self.commitment)
        except (SolanaRpcException, RPCException) as e:
            raise NetworkUnavailable(f"unable to get latest blockhash: {describe(e)}") from e
        return resp.value.blockhash, resp.value.last_valid_block_height

    def get_balance(self, pubkey: Pubkey) -> int:
        try:
            return self.client.get_balance(pubkey, self.commitment).value
        except (SolanaRpcException, RPCException) as e:
            raise NetworkUnavailable(f"unable to get balance of {pubkey}: {describe(e)}") from e

    def get_block_height(self) -> int:
        try:
            return self.client.get_block_height(self.commitment).value
        except (SolanaRpcException, RPCException) as e:
            raise NetworkUnavailable(f"unable to get block height: {describe(e)}") from e

    def send(self, txn: VersionedTransaction) -> Signature:
        try:
            return self.client.send_transaction(
                txn=txn,
                opts=TxOpts(skip_preflight=self.skip_preflight, preflight_commitment=self.commitment),
            ).value
        except SolanaRpcException as e:
            raise NetworkUnavailable(f"send transaction: {describe(e)}") from e
        except RPCException as e:
            raise Rejected(f"send transaction: {describe(e)}") from e

    def confirm(self, signature: Signature) -> bool:
        try:
            statuses = self.client.get_signature_statuses([signature]).value
        except (SolanaRpcException, RPCException) as e:
            raise NetworkUnavailable(f"unable to get status of {signature}: {describe(e)}") from e
        status = statuses[0] if statuses else None
        if status is None:
            return False
        if status.err is not None:
            raise Rejected(f"transaction {signature} failed: {status.err}")
        if self.commitment == Finalized:
            accepted = (TransactionConfirmationStatus.Finalized,)
        else:
            accepted = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)
        return status.confirmation_status in accepted


class AmountSelector:
    def __init__(
        self,
        fee_lamports: int = DEFAULT_FEE_LAMPORTS,
        margin_lamports: int = DEFAULT_MARGIN_LAMPORTS,
        min_lamports: int = MIN_TRANSFER_LAMPORTS,
        rng=random,
    ):
        if min_lamports < 1:
            raise ValueError("min_lamports must be at least 1")
        self.fee_lamports = fee_lamports
        self.margin_lamports = margin_lamports
        self.min_lamports = min_lamports
        self.rng = rng

    def upper_bound(self, balance: int) -> int:
        return balance - self.fee_lamports - self.margin_lamports

    def select(self, balance: int) -> int:
        upper = self.upper_bound(balance)
        if upper < self.min_lamports:
            raise InsufficientFunds(
                f"balance {balance} lamports cannot cover fee {self.fee_lamports} "
                f"+ margin {self.margin_lamports} + minimum transfer {self.min_lamports}"
            )
        return self.rng.randint(self.min_lamports, upper)


def transfer_with_references(signer: Pubkey, lamports: int, references: Sequence[Pubkey]) -> Instruction:
    """System transfer from ``signer`` to itself, naming each reference read-only."""
    ix = transfer(TransferParams(from_pubkey=signer, to_pubkey=signer, lamports=lamports))
    accounts = list(ix.accounts)
    for reference in references:
        accounts.append(AccountMeta(reference, is_signer=False, is_writable=False))
    return Instruction(ix.program_id, ix.data, accounts)


@dataclass(frozen=True)
class BuiltTransaction:
    message: MessageV0
    last_valid_block_height: int
    amount: int


class TransactionBuilder:
    def __init__(self, ledger: Ledger, signer: Pubkey, references: Sequence[Pubkey] = ()):
        self.ledger = ledger
        self.signer = signer
        self.references = self.validate_references(signer, references)

    @staticmethod
    def validate_references(signer: Pubkey, references: Sequence[Pubkey]) -> Tuple[Pubkey, ...]:
        seen = set()
        for reference in references:
            if reference == signer:
                raise InvalidAddress(f"reference address {reference} is the signer's own address")
            if reference in seen:
                raise InvalidAddress(f"reference address {reference} given more than once")
            seen.add(reference)
        return tuple(references)

    def instruction(self, amount: int) -> Instruction:
        return transfer_with_references(self.signer, amount, self.references)

    def build(self, amount: int) -> BuiltTransaction:
        if amount <= 0:
            raise ValueError(f"transfer amount must be positive, got {amount}")
        blockhash, last_valid_block_height = self.ledger.fetch_blockhash()
        logger.debug(f"Fetched blockhash {blockhash} (valid until block {last_valid_block_height})")
        message = MessageV0.try_compile(
            self.signer,
            [self.instruction(amount)],
            [],
            blockhash,
        )
        return BuiltTransaction(message, last_valid_block_height, amount)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_seconds: float = 0.5
    max_backoff_seconds: float = 4.0
    confirm_timeout: float = 30.0
    poll_interval: float = 1.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.confirm_timeout <= 0:
            raise ValueError("confirm_timeout must be positive")

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_seconds * 2 ** (attempt - 1), self.max_backoff_seconds)


class Submitter:
    def __init__(
        self,
        ledger: Ledger,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ledger = ledger
        self.policy = policy or RetryPolicy()
        self.sleep = sleep
        self.clock = clock

    def sign(self, built: BuiltTransaction, keypair: Keypair) -> VersionedTransaction:
        return VersionedTransaction(built.message, [keypair])

    def submit(self, build: Callable[[], BuiltTransaction], keypair: Keypair) -> Signature:
        """Sign, send and confirm the transaction produced by ``build``.

        ``build`` is called once up front and again whenever the blockhash
        needs replacing. Returns the signature once confirmed, otherwise
        raises `Rejected`, `TimedOut` or `NetworkUnavailable`.
        """
        signature = self.send_with_retry(build, keypair)
        self.wait_for_confirmation(signature)
        return signature

    def send_with_retry(self, build: Callable[[], BuiltTransaction], keypair: Keypair) -> Signature:
        max_attempts = self.policy.max_attempts
        built = build()
        txn = self.sign(built, keypair)
        # a send of the current bytes failed in transit and may still have landed
        maybe_landed = False
        rebuild = False
        attempt = 1
        while True:
            sending = False
            try:
                if maybe_landed and (rebuild or self.blockhash_expired(built)):
                    if self.ledger.confirm(txn.signatures[0]):
                        signature = txn.signatures[0]
                        logger.info(f"Transaction {signature} landed before the retry")
                        return signature
                    rebuild = True
                if rebuild:
                    built = build()
                    txn = self.sign(built, keypair)
                    maybe_landed = False
                    rebuild = False
                sending = True
                signature = self.ledger.send(txn)
                logger.info(f"Sent transaction {signature} (attempt {attempt}/{max_attempts})")
                return signature
            except NetworkUnavailable as e:
                maybe_landed = maybe_landed or sending
                if attempt >= max_attempts:
                    logger.error(f"Giving up after {attempt} attempt(s): {e.reason}")
                    raise
                delay = self.policy.backoff(attempt)
                logger.warning(f"Attempt {attempt}/{max_attempts} failed: {e.reason}, retrying in {delay}s")
                self.sleep(delay)
            except Rejected as e:
                # network dedupes by signature, a resend of bytes that already landed is fine
                if maybe_landed and e.already_processed:
                    signature = txn.signatures[0]
                    logger.info(f"Transaction {signature} was already processed")
                    return signature
                if not e.blockhash_expired or attempt >= max_attempts:
                    raise
                logger.warning(f"Attempt {attempt}/{max_attempts} rejected: {e.reason}, rebuilding")
                rebuild = True
            attempt += 1

    def blockhash_expired(self, built: BuiltTransaction) -> bool:
        try:
            height = self.ledger.get_block_height()
        except NetworkUnavailable as e:
            logger.warning(f"Unable to check blockhash expiry, resending as is: {e.reason}")
            return False
        return height > built.last_valid_block_height

    def wait_for_confirmation(self, signature: Signature) -> None:
        deadline = self.clock() + self.policy.confirm_timeout
        polls = 1
        while True:
            try:
                if self.ledger.confirm(signature):
                    logger.info(f"Transaction {signature} confirmed after {polls} poll(s)")
                    return
                logger.debug(f"Awaiting confirmation of {signature}... poll {polls}")
            except NetworkUnavailable as e:
                logger.warning(f"Confirmation poll {polls} failed: {e.reason}")
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise TimedOut(
                    f"transaction {signature} not confirmed within {self.policy.confirm_timeout}s"
                )
            self.sleep(min(self.policy.poll_interval, remaining))
            polls += 1


@dataclass(frozen=True)
class TransferReceipt:
    signature: Signature
    amount: int
    references: Tuple[Pubkey, ...] = field(default_factory=tuple)
    outcome: SubmissionOutcome = SubmissionOutcome.CONFIRMED


class SelfTransfer:
    def __init__(
        self,
        ledger: Ledger,
        keypair: Keypair,
        references: Sequence[Pubkey] = (),
        selector: Optional[AmountSelector] = None,
        policy: Optional[RetryPolicy] = None,
        submitter: Optional[Submitter] = None,
    ):
        self.ledger = ledger
        self.keypair = keypair
        self.references = tuple(references)
        self.selector = selector or AmountSelector()
        self.submitter = submitter or Submitter(ledger, policy)

    def execute(self) -> TransferReceipt:
        signer = self.keypair.pubkey()
        builder = TransactionBuilder(self.ledger, signer, self.references)

        balance = self.ledger.get_balance(signer)
        amount = self.selector.select(balance)
        logger.debug(f"Fee payer: {signer}, Amount: {lamports_to_sol(amount)}")
        if builder.references:
            logger.debug(f"Reference addresses: {', '.join(str(r) for r in builder.references)}")

        signature = self.submitter.submit(lambda: builder.build(amount), self.keypair)
        return TransferReceipt(signature, amount, builder.references)
