"""
Chain client for the CertificateRegistry contract.
Owns the signing identity, the submission lock and the nonce cursor used for
sequenced batch issuance.
"""

import asyncio
import secrets
import string
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional

from eth_account import Account
from web3 import Web3
from web3.exceptions import TimeExhausted
from web3.middleware import ExtraDataToPOAMiddleware

from ..core.config import Settings
from ..core.errors import (
    ChainError,
    ChainNotConfigured,
    ChainSubmissionError,
    TransactionReverted,
    describe_error,
)
from ..models.certificate import CertificateRecord, OutcomeStatus, TransactionOutcome
from ..utils.logger import get_logger

logger = get_logger("chain_client")


POA_CHAIN_IDS = (80001, 80002, 137)  # Mumbai, Amoy, Polygon

CERT_ID_ALPHABET = string.ascii_uppercase + string.digits
CERT_ID_SUFFIX_LENGTH = 4


def _fn(name: str, inputs: List[Dict[str, str]], outputs: List[Dict[str, Any]], mutability: str) -> Dict[str, Any]:
    return {
        "inputs": inputs,
        "name": name,
        "outputs": outputs,
        "stateMutability": mutability,
        "type": "function",
    }


def _arg(name: str, type_: str) -> Dict[str, str]:
    return {"internalType": type_, "name": name, "type": type_}


CERTIFICATE_REGISTRY_ABI: List[Dict[str, Any]] = [
    _fn("getTotalCertificates", [], [_arg("", "uint256")], "view"),
    _fn("totalInstitutions", [], [_arg("", "uint256")], "view"),
    _fn("totalRevocations", [], [_arg("", "uint256")], "view"),
    _fn("isAuthorizedInstitution", [_arg("_institution", "address")], [_arg("", "bool")], "view"),
    _fn("certificateExistsCheck", [_arg("_certificateId", "string")], [_arg("", "bool")], "view"),
    _fn(
        "getCertificate",
        [_arg("_certificateId", "string")],
        [{
            "components": [
                _arg("studentName", "string"),
                _arg("studentId", "string"),
                _arg("degree", "string"),
                _arg("institution", "string"),
                _arg("issueDate", "uint256"),
                _arg("ipfsHash", "string"),
                _arg("issuer", "address"),
                _arg("isValid", "bool"),
                _arg("exists", "bool"),
            ],
            "internalType": "struct CertificateRegistry.Certificate",
            "name": "",
            "type": "tuple",
        }],
        "view",
    ),
    _fn(
        "issueCertificate",
        [
            _arg("_certificateId", "string"),
            _arg("_studentName", "string"),
            _arg("_studentId", "string"),
            _arg("_degree", "string"),
            _arg("_institution", "string"),
            _arg("_issueDate", "uint256"),
            _arg("_ipfsHash", "string"),
        ],
        [],
        "nonpayable",
    ),
]


@dataclass
class NonceCursor:
    """Local nonce state for one batch run against one signing identity"""
    next_nonce: int
    synced_at: float = field(default_factory=time.time)
    consumed: int = 0

    def advance(self) -> None:
        """Mark the current nonce as consumed by an accepted transaction"""
        self.next_nonce += 1
        self.consumed += 1

    def resync(self, pending_nonce: int) -> None:
        """Adopt the network's pending nonce; the cursor never moves backwards"""
        if pending_nonce < self.next_nonce:
            logger.warning(
                f"Network pending nonce {pending_nonce} is behind local cursor {self.next_nonce}; keeping local value"
            )
        else:
            self.next_nonce = pending_nonce
        self.synced_at = time.time()


class BatchSession:
    """
    Sequenced submission for one batch.

    Created by ``ChainClient.batch_session`` while the client's submission lock
    is held. Records must be issued one at a time, in order.
    """

    def __init__(self, client: "ChainClient", cursor: NonceCursor):
        self.client = client
        self.cursor = cursor
        self.succeeded = 0
        self.failed = 0
        self.resyncs = 0

    @property
    def nonces_consumed(self) -> int:
        return self.cursor.consumed

    async def issue(self, record: CertificateRecord) -> TransactionOutcome:
        """
        Submit and confirm one record with the next explicit nonce.

        Never raises for a per-record problem; the outcome carries the reason.
        """
        nonce = self.cursor.next_nonce

        try:
            tx_hash = await self.client.submit_issuance(record, nonce=nonce)
        except Exception as e:
            # Not accepted by the network: the nonce is still free
            self.failed += 1
            reason = describe_error(e)
            logger.warning(f"Submission for {record.cert_id} (nonce {nonce}) rejected before broadcast: {reason}")
            await self._resync()
            return TransactionOutcome(status=OutcomeStatus.FAILED, error=reason, accepted=False)

        self.cursor.advance()

        try:
            outcome = await self.client.confirm(tx_hash)
        except Exception as e:
            self.failed += 1
            reason = describe_error(e)
            logger.warning(f"Transaction {tx_hash} for {record.cert_id} failed after acceptance: {reason}")
            return TransactionOutcome(status=OutcomeStatus.FAILED, tx_hash=tx_hash, error=reason, accepted=True)

        self.succeeded += 1
        return outcome

    async def _resync(self) -> None:
        try:
            pending = await self.client.get_pending_nonce()
        except Exception as e:
            logger.warning(f"Nonce re-sync failed, keeping cursor at {self.cursor.next_nonce}: {describe_error(e)}")
            return
        self.resyncs += 1
        self.cursor.resync(pending)


class ChainClient:
    """Client for certificate issuance and verification on the registry contract"""

    def __init__(
        self,
        w3: Web3,
        contract: Any,
        account: Any,
        chain_id: int,
        network_name: str = "localhost",
        gas_limit: int = 500000,
        confirm_timeout: int = 120,
        verify_unique_ids: bool = True,
        id_generation_attempts: int = 3
    ):
        self.w3 = w3
        self.contract = contract
        self.account = account
        self.chain_id = chain_id
        self.network_name = network_name
        self.gas_limit = gas_limit
        self.confirm_timeout = confirm_timeout
        self.verify_unique_ids = verify_unique_ids
        self.id_generation_attempts = max(1, id_generation_attempts)
        self._submission_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ChainClient":
        """
        Build a client from application settings.

        Raises:
            ChainNotConfigured: If the signing key or contract address is missing
        """
        if not settings.private_key:
            raise ChainNotConfigured("PRIVATE_KEY is not set")
        if not settings.contract_address:
            raise ChainNotConfigured("CONTRACT_ADDRESS is not set")

        w3 = Web3(Web3.HTTPProvider(settings.rpc_url))
        if settings.chain_id in POA_CHAIN_IDS:
            w3.middleware_onion.inject(ExtraDataToPOAMiddleware, layer=0)

        account = Account.from_key(settings.private_key)
        contract = w3.eth.contract(
            address=Web3.to_checksum_address(settings.contract_address),
            abi=CERTIFICATE_REGISTRY_ABI
        )

        logger.info(f"Chain client for {account.address} on {settings.network_name} ({settings.chain_id})")

        return cls(
            w3=w3,
            contract=contract,
            account=account,
            chain_id=settings.chain_id,
            network_name=settings.network_name,
            gas_limit=settings.gas_limit,
            confirm_timeout=settings.tx_confirm_timeout,
            verify_unique_ids=settings.verify_unique_ids,
            id_generation_attempts=settings.id_generation_attempts,
        )

    @property
    def address(self) -> str:
        return self.account.address

    @property
    def submission_in_progress(self) -> bool:
        return self._submission_lock.locked()

    # Reads

    async def get_pending_nonce(self) -> int:
        """Network's view of the next nonce, including pending transactions"""
        return await asyncio.to_thread(self.w3.eth.get_transaction_count, self.address, "pending")

    async def get_total_certificates(self) -> int:
        return int(await asyncio.to_thread(self.contract.functions.getTotalCertificates().call))

    async def certificate_exists(self, cert_id: str) -> bool:
        return bool(await asyncio.to_thread(self.contract.functions.certificateExistsCheck(cert_id).call))

    async def generate_certificate_id(self, offset: int = 0) -> str:
        """
        Generate a certificate id of the form CERT-<year>-<seq>-<rand>.

        The sequence is the on-chain total plus one plus ``offset`` (ids already
        handed out in the current batch). Uniqueness is probabilistic; when
        ``verify_unique_ids`` is set, ids that already exist on-chain are
        regenerated.

        Raises:
            ChainError: If no unused id was found within the attempt limit
        """
        count = await self.get_total_certificates()
        year = datetime.now(timezone.utc).year
        sequence = str(count + 1 + offset).zfill(3)

        for _ in range(self.id_generation_attempts):
            suffix = "".join(secrets.choice(CERT_ID_ALPHABET) for _ in range(CERT_ID_SUFFIX_LENGTH))
            cert_id = f"CERT-{year}-{sequence}-{suffix}"
            if not self.verify_unique_ids:
                return cert_id
            if not await self.certificate_exists(cert_id):
                return cert_id
            logger.warning(f"Certificate id {cert_id} already exists on-chain, regenerating")

        raise ChainError(f"Could not generate an unused certificate id after {self.id_generation_attempts} attempts")

    async def verify_certificate(self, cert_id: str) -> Dict[str, Any]:
        """Look up a certificate on-chain"""
        if not await self.certificate_exists(cert_id):
            return {"cert_id": cert_id, "exists": False}

        cert = await asyncio.to_thread(self.contract.functions.getCertificate(cert_id).call)
        (student_name, student_id, degree, institution, issue_date, ipfs_hash, issuer, is_valid, exists) = cert

        return {
            "cert_id": cert_id,
            "exists": bool(exists),
            "is_valid": bool(is_valid),
            "student_name": student_name,
            "student_id": student_id,
            "degree": degree,
            "institution": institution,
            "issue_date": int(issue_date),
            "content_id": ipfs_hash,
            "issuer": issuer,
        }

    async def get_stats(self) -> Dict[str, int]:
        functions = self.contract.functions
        total_certs, total_institutions, total_revocations = await asyncio.gather(
            asyncio.to_thread(functions.getTotalCertificates().call),
            asyncio.to_thread(functions.totalInstitutions().call),
            asyncio.to_thread(functions.totalRevocations().call),
        )
        return {
            "total_certificates": int(total_certs),
            "total_institutions": int(total_institutions),
            "total_revocations": int(total_revocations),
        }

    async def is_authorized(self) -> bool:
        """Whether the signing identity may issue certificates"""
        return bool(await asyncio.to_thread(
            self.contract.functions.isAuthorizedInstitution(self.address).call
        ))

    async def network_info(self) -> Dict[str, Any]:
        block_number = await asyncio.to_thread(lambda: self.w3.eth.block_number)
        return {
            "network_name": self.network_name,
            "chain_id": self.chain_id,
            "latest_block": int(block_number),
            "account_address": self.address,
            "submission_in_progress": self.submission_in_progress,
        }

    # Writes

    async def submit_issuance(self, record: CertificateRecord, nonce: Optional[int] = None) -> str:
        """
        Estimate, sign and broadcast an issueCertificate transaction.

        Args:
            record: Record with an assigned certificate id
            nonce: Explicit nonce; resolved from the network when None

        Returns:
            0x-prefixed transaction hash of the accepted transaction

        Raises:
            ChainSubmissionError: If anything fails before the network accepts the transaction
        """
        try:
            return await asyncio.to_thread(self._sign_and_send, record, nonce)
        except ChainSubmissionError:
            raise
        except Exception as e:
            raise ChainSubmissionError(describe_error(e)) from e

    def _sign_and_send(self, record: CertificateRecord, nonce: Optional[int]) -> str:
        call = self.contract.functions.issueCertificate(
            record.cert_id,
            record.student_name,
            record.student_id,
            record.degree,
            record.institution,
            record.issue_timestamp,
            record.content_id or ""
        )

        estimated = call.estimate_gas({"from": self.address})
        gas = min(int(estimated * 1.2), self.gas_limit)

        if nonce is None:
            nonce = self.w3.eth.get_transaction_count(self.address, "pending")

        transaction = call.build_transaction({
            "from": self.address,
            "chainId": self.chain_id,
            "gas": gas,
            "gasPrice": self.w3.eth.gas_price,
            "nonce": nonce,
        })

        signed = self.account.sign_transaction(transaction)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = self.w3.to_hex(tx_hash)

        logger.info(f"Submitted {record.cert_id} with nonce {nonce}: {tx_hex}")
        return tx_hex

    async def confirm(self, tx_hash: str) -> TransactionOutcome:
        """
        Wait for a submitted transaction to be mined.

        Raises:
            TransactionReverted: If the transaction reverted or was not mined in time
        """
        try:
            receipt = await asyncio.to_thread(
                self.w3.eth.wait_for_transaction_receipt, tx_hash, timeout=self.confirm_timeout
            )
        except TimeExhausted as e:
            raise TransactionReverted(
                f"Transaction not mined within {self.confirm_timeout}s", tx_hash
            ) from e

        if receipt["status"] != 1:
            raise TransactionReverted("Transaction reverted on-chain", tx_hash)

        return TransactionOutcome(
            status=OutcomeStatus.SUCCESS,
            tx_hash=tx_hash,
            block_number=int(receipt["blockNumber"]),
            gas_used=int(receipt["gasUsed"]),
            accepted=True,
        )

    @asynccontextmanager
    async def batch_session(self) -> AsyncIterator[BatchSession]:
        """
        Hold the submission lock and open a nonce cursor for a batch.

        Only one batch session per signing identity can be active; a second
        caller waits here until the first session is closed.
        """
        if self._submission_lock.locked():
            logger.info(f"Waiting for the active submission on {self.address} to finish")

        async with self._submission_lock:
            start_nonce = await self.get_pending_nonce()
            session = BatchSession(self, NonceCursor(next_nonce=start_nonce))
            logger.info(f"Batch session opened for {self.address} at nonce {start_nonce}")
            try:
                yield session
            finally:
                logger.info(
                    f"Batch session closed: {session.succeeded} succeeded, {session.failed} failed, "
                    f"{session.nonces_consumed} nonces consumed, {session.resyncs} re-syncs"
                )

    async def issue_certificate(self, record: CertificateRecord) -> TransactionOutcome:
        """
        Issue a single certificate outside of a batch.

        The nonce is resolved from the network per call. The submission lock is
        still taken so single issuance never interleaves with a batch.

        Raises:
            ChainSubmissionError: If the transaction was not accepted
            TransactionReverted: If the accepted transaction failed
        """
        async with self._submission_lock:
            tx_hash = await self.submit_issuance(record, nonce=None)
            return await self.confirm(tx_hash)
