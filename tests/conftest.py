"""Shared fixtures and in-memory fakes for the web3 provider, renderer, store and mailer."""

import hashlib
import json
from types import SimpleNamespace
from typing import Dict, List, Optional, Set

import pytest
from web3.exceptions import TimeExhausted

from certchain.core.errors import ContentStoreError, RenderError
from certchain.models.certificate import CertificateRecord
from certchain.services.batch_orchestrator import BatchOrchestrator
from certchain.services.chain_client import ChainClient
from certchain.services.content_store import ContentStore, StoredContent
from certchain.services.job_store import JobStore
from certchain.services.notification_service import NotificationService
from certchain.services.pdf_service import PDFService, RenderedDocument, RenderSession
from certchain.services.qr_service import QRCodeService


SIGNER_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_row(index: int = 1, **overrides) -> Dict[str, str]:
    """Normalized row with valid values."""
    row = {
        "student_name": f"Student {chr(64 + index)}",
        "student_id": f"STU-{index:03d}",
        "degree": "BSc Computer Science",
        "institution": "Test University",
        "issue_date": "2026-06-15",
        "email": f"student{index}@example.com",
    }
    row.update(overrides)
    return row


def make_record(row: int = 1, **overrides) -> CertificateRecord:
    data = make_row(row)
    data.update(overrides)
    data["email"] = data.get("email") or None
    return CertificateRecord(row=row, **data)


# Chain fakes


class FakeChain:
    """In-memory stand-in for a node and the registry contract."""

    def __init__(self):
        self.pending_nonce = 0
        self.block = 100
        self.nonce_queries = 0
        self.fail_nonce_query = False
        self.sent_nonces: List[int] = []
        self.transactions: Dict[bytes, dict] = {}
        self.issued: Dict[str, dict] = {}
        self.existing_ids: Set[str] = set()
        self.institutions = 1
        self.revocations = 0
        # Failure injection keyed by student id
        self.reject_estimate: Set[str] = set()
        self.reject_broadcast: Set[str] = set()
        self.revert: Set[str] = set()
        self.timeout: Set[str] = set()
        self.on_reject = None


class FakeEth:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    @property
    def gas_price(self) -> int:
        return 1_000_000_000

    @property
    def block_number(self) -> int:
        return self.chain.block

    def get_transaction_count(self, address: str, block_identifier: str = "latest") -> int:
        self.chain.nonce_queries += 1
        if self.chain.fail_nonce_query:
            raise ConnectionError("RPC endpoint unreachable")
        return self.chain.pending_nonce

    def send_raw_transaction(self, raw: bytes) -> bytes:
        tx = json.loads(raw)
        student_id = tx["args"][2]
        if student_id in self.chain.reject_broadcast:
            raise ValueError("replacement transaction underpriced")
        if tx["nonce"] != self.chain.pending_nonce:
            raise ValueError(f"invalid nonce {tx['nonce']}, expected {self.chain.pending_nonce}")

        self.chain.pending_nonce += 1
        self.chain.sent_nonces.append(tx["nonce"])
        tx_hash = hashlib.sha256(raw).digest()
        self.chain.transactions[tx_hash] = tx
        return tx_hash

    def wait_for_transaction_receipt(self, tx_hash: str, timeout: int = 120) -> dict:
        tx = self.chain.transactions[bytes.fromhex(tx_hash[2:])]
        cert_id, student_id = tx["args"][0], tx["args"][2]
        if student_id in self.chain.timeout:
            raise TimeExhausted(f"Transaction {tx_hash} is not in the chain after {timeout} seconds")

        self.chain.block += 1
        if student_id in self.chain.revert:
            return {"status": 0, "blockNumber": self.chain.block, "gasUsed": 30000}

        self.chain.issued[cert_id] = tx
        return {"status": 1, "blockNumber": self.chain.block, "gasUsed": 180000}


class FakeWeb3:
    def __init__(self, chain: FakeChain):
        self.eth = FakeEth(chain)

    @staticmethod
    def to_hex(value: bytes) -> str:
        return "0x" + value.hex()


class FakeCall:
    def __init__(self, result):
        self._result = result

    def call(self):
        return self._result()


class FakeIssueCall:
    def __init__(self, chain: FakeChain, args: tuple):
        self.chain = chain
        self.args = args

    def estimate_gas(self, params: dict) -> int:
        student_id = self.args[2]
        if student_id in self.chain.reject_estimate:
            if self.chain.on_reject:
                self.chain.on_reject(self.chain)
            raise ValueError("execution reverted: gas estimation failed")
        return 150000

    def build_transaction(self, params: dict) -> dict:
        return dict(params, args=list(self.args))


class FakeFunctions:
    def __init__(self, chain: FakeChain):
        self.chain = chain

    def getTotalCertificates(self):
        return FakeCall(lambda: len(self.chain.issued))

    def totalInstitutions(self):
        return FakeCall(lambda: self.chain.institutions)

    def totalRevocations(self):
        return FakeCall(lambda: self.chain.revocations)

    def isAuthorizedInstitution(self, address):
        return FakeCall(lambda: address == SIGNER_ADDRESS)

    def certificateExistsCheck(self, cert_id):
        return FakeCall(lambda: cert_id in self.chain.issued or cert_id in self.chain.existing_ids)

    def getCertificate(self, cert_id):
        def _get():
            args = self.chain.issued[cert_id]["args"]
            return (args[1], args[2], args[3], args[4], args[5], args[6], SIGNER_ADDRESS, True, True)
        return FakeCall(_get)

    def issueCertificate(self, *args):
        return FakeIssueCall(self.chain, args)


class FakeContract:
    def __init__(self, chain: FakeChain):
        self.functions = FakeFunctions(chain)


class FakeAccount:
    address = SIGNER_ADDRESS

    def sign_transaction(self, transaction: dict):
        return SimpleNamespace(raw_transaction=json.dumps(transaction, sort_keys=True).encode())


@pytest.fixture
def chain() -> FakeChain:
    return FakeChain()


@pytest.fixture
def chain_client(chain: FakeChain) -> ChainClient:
    return ChainClient(
        w3=FakeWeb3(chain),
        contract=FakeContract(chain),
        account=FakeAccount(),
        chain_id=31337,
        confirm_timeout=5,
    )


# Collaborator fakes


class FlakyRenderSession(RenderSession):
    def __init__(self, *args, fail_rows: Set[int], **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_rows = fail_rows

    async def render(self, record: CertificateRecord) -> RenderedDocument:
        if record.row in self.fail_rows:
            raise RenderError(f"Template rendering failed for row {record.row}")
        return await super().render(record)


class FlakyPDFService(PDFService):
    """Renders real PDFs except for the configured rows."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.fail_rows: Set[int] = set()

    def session(self, template_id: Optional[str] = None) -> RenderSession:
        return FlakyRenderSession(
            self.get_template(template_id), self.output_dir, self.qr_service, fail_rows=self.fail_rows
        )


class UnreachableContentStore(ContentStore):
    async def store(self, data, file_name, metadata=None) -> StoredContent:
        raise ContentStoreError("Pinata upload failed: Cannot connect to host api.pinata.cloud:443")


class RecordingNotifier(NotificationService):
    """SMTP notifier that records messages instead of connecting."""

    def __init__(self, *args, fail_to: Optional[Set[str]] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.delivered = []
        self.fail_to = fail_to or set()

    def _deliver(self, msg) -> None:
        if msg["To"] in self.fail_to:
            raise ConnectionError("SMTP connection refused")
        self.delivered.append(msg)


@pytest.fixture
def qr_service(tmp_path) -> QRCodeService:
    return QRCodeService(verify_base_url="https://certs.example.com/verify", output_dir=str(tmp_path / "output"))


@pytest.fixture
def pdf_service(qr_service, tmp_path) -> FlakyPDFService:
    return FlakyPDFService(qr_service=qr_service, output_dir=str(tmp_path / "output"))


@pytest.fixture
def content_store() -> ContentStore:
    return ContentStore(pinata_jwt=None)


@pytest.fixture
def notifier(qr_service) -> RecordingNotifier:
    return RecordingNotifier(
        qr_service=qr_service,
        smtp_host="smtp.example.com",
        smtp_user="issuer@example.com",
        smtp_pass="secret",
        delay_seconds=0,
    )


@pytest.fixture
def job_store() -> JobStore:
    return JobStore()


@pytest.fixture
def orchestrator(job_store, pdf_service, content_store, qr_service, chain_client) -> BatchOrchestrator:
    return BatchOrchestrator(
        job_store=job_store,
        pdf_service=pdf_service,
        content_store=content_store,
        qr_service=qr_service,
        notifier=None,
        chain_client=chain_client,
    )
