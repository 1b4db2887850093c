"""Unit tests for nonce-sequenced submission in the chain client."""

import asyncio
import re
from datetime import datetime, timezone

import anyio
import pytest

from certchain.core.errors import ChainError, ChainSubmissionError, TransactionReverted
from certchain.models.certificate import OutcomeStatus
from certchain.services.chain_client import NonceCursor

from conftest import make_record


CERT_ID_PATTERN = re.compile(r"^CERT-\d{4}-\d{3}-[A-Z0-9]{4}$")


def _current_year() -> int:
    return datetime.now(timezone.utc).year


def _records(count: int):
    records = []
    for row in range(1, count + 1):
        record = make_record(row)
        record.assign("cert_id", f"CERT-2026-{row:03d}-TEST")
        records.append(record)
    return records


@pytest.mark.anyio
async def test_batch_uses_consecutive_nonces_from_pending(chain, chain_client):
    chain.pending_nonce = 7

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in _records(3)]

    assert [outcome.status for outcome in outcomes] == [OutcomeStatus.SUCCESS] * 3
    assert chain.sent_nonces == [7, 8, 9]
    assert session.nonces_consumed == 3
    # One pending-nonce fetch for the whole batch
    assert chain.nonce_queries == 1


@pytest.mark.anyio
async def test_successful_outcome_carries_receipt_details(chain, chain_client):
    async with chain_client.batch_session() as session:
        outcome = await session.issue(_records(1)[0])

    assert outcome.status == OutcomeStatus.SUCCESS
    assert outcome.accepted is True
    assert outcome.tx_hash.startswith("0x")
    assert outcome.block_number == 101
    assert outcome.gas_used == 180000
    assert outcome.error is None


@pytest.mark.anyio
async def test_pre_acceptance_failure_does_not_consume_nonce(chain, chain_client):
    records = _records(3)
    chain.reject_estimate.add(records[1].student_id)

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in records]

    assert [outcome.status for outcome in outcomes] == [
        OutcomeStatus.SUCCESS, OutcomeStatus.FAILED, OutcomeStatus.SUCCESS
    ]
    assert outcomes[1].accepted is False
    assert outcomes[1].tx_hash is None
    assert "gas estimation failed" in outcomes[1].error
    assert chain.sent_nonces == [0, 1]
    assert session.nonces_consumed == 2
    # Initial fetch plus one re-sync after the rejection
    assert chain.nonce_queries == 2
    assert session.resyncs == 1


@pytest.mark.anyio
async def test_resync_adopts_network_nonce_after_rejection(chain, chain_client):
    records = _records(3)
    chain.reject_estimate.add(records[1].student_id)

    def external_submission(fake_chain):
        # Another sender on the same key used a nonce meanwhile
        fake_chain.pending_nonce += 1

    chain.on_reject = external_submission

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in records]

    assert outcomes[2].status == OutcomeStatus.SUCCESS
    assert chain.sent_nonces == [0, 2]


@pytest.mark.anyio
async def test_broadcast_rejection_is_pre_acceptance(chain, chain_client):
    records = _records(2)
    chain.reject_broadcast.add(records[0].student_id)

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in records]

    assert outcomes[0].status == OutcomeStatus.FAILED
    assert outcomes[0].accepted is False
    assert "underpriced" in outcomes[0].error
    assert outcomes[1].status == OutcomeStatus.SUCCESS
    assert chain.sent_nonces == [0]


@pytest.mark.anyio
async def test_revert_after_acceptance_consumes_nonce_without_resync(chain, chain_client):
    records = _records(3)
    chain.revert.add(records[1].student_id)

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in records]

    assert outcomes[1].status == OutcomeStatus.FAILED
    assert outcomes[1].accepted is True
    assert outcomes[1].tx_hash is not None
    assert outcomes[1].error == "Transaction reverted on-chain"
    assert outcomes[2].status == OutcomeStatus.SUCCESS
    assert chain.sent_nonces == [0, 1, 2]
    assert session.nonces_consumed == 3
    assert chain.nonce_queries == 1


@pytest.mark.anyio
async def test_confirmation_timeout_is_a_post_acceptance_failure(chain, chain_client):
    records = _records(2)
    chain.timeout.add(records[0].student_id)

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in records]

    assert outcomes[0].status == OutcomeStatus.FAILED
    assert outcomes[0].accepted is True
    assert "not mined" in outcomes[0].error
    assert chain.sent_nonces == [0, 1]


@pytest.mark.anyio
async def test_failed_resync_keeps_local_cursor(chain, chain_client):
    records = _records(3)
    chain.reject_estimate.add(records[1].student_id)

    def rpc_goes_down(fake_chain):
        fake_chain.fail_nonce_query = True

    chain.on_reject = rpc_goes_down

    async with chain_client.batch_session() as session:
        outcomes = [await session.issue(record) for record in records]

    assert outcomes[2].status == OutcomeStatus.SUCCESS
    assert chain.sent_nonces == [0, 1]
    assert session.resyncs == 0


def test_cursor_never_moves_backwards():
    cursor = NonceCursor(next_nonce=5)

    cursor.resync(3)
    assert cursor.next_nonce == 5

    cursor.resync(9)
    assert cursor.next_nonce == 9

    cursor.advance()
    assert cursor.next_nonce == 10
    assert cursor.consumed == 1


@pytest.mark.anyio
async def test_second_batch_waits_for_the_first(chain_client):
    release = asyncio.Event()
    order = []

    async def first():
        async with chain_client.batch_session():
            order.append("first-start")
            await release.wait()
            order.append("first-end")

    async def second():
        async with chain_client.batch_session():
            order.append("second-start")

    first_task = asyncio.create_task(first())
    with anyio.fail_after(5):
        while not order:
            await asyncio.sleep(0.005)
    second_task = asyncio.create_task(second())
    await asyncio.sleep(0.05)

    assert chain_client.submission_in_progress
    assert order == ["first-start"]

    release.set()
    await asyncio.gather(first_task, second_task)
    assert order == ["first-start", "first-end", "second-start"]


@pytest.mark.anyio
async def test_single_issuance_raises_on_rejection(chain, chain_client):
    record = _records(1)[0]
    chain.reject_estimate.add(record.student_id)

    with pytest.raises(ChainSubmissionError):
        await chain_client.issue_certificate(record)


@pytest.mark.anyio
async def test_single_issuance_raises_on_revert(chain, chain_client):
    record = _records(1)[0]
    chain.revert.add(record.student_id)

    with pytest.raises(TransactionReverted) as exc_info:
        await chain_client.issue_certificate(record)
    assert exc_info.value.tx_hash.startswith("0x")


@pytest.mark.anyio
async def test_single_issuance_resolves_nonce_from_network(chain, chain_client):
    chain.pending_nonce = 4

    outcome = await chain_client.issue_certificate(_records(1)[0])

    assert outcome.status == OutcomeStatus.SUCCESS
    assert chain.sent_nonces == [4]


@pytest.mark.anyio
async def test_generated_id_format_and_sequence(chain, chain_client):
    await chain_client.issue_certificate(_records(1)[0])

    cert_id = await chain_client.generate_certificate_id()
    assert CERT_ID_PATTERN.match(cert_id)
    assert cert_id.split("-")[2] == "002"

    offset_id = await chain_client.generate_certificate_id(offset=3)
    assert offset_id.split("-")[2] == "005"


@pytest.mark.anyio
async def test_generated_id_avoids_existing_ids(chain, chain_client, monkeypatch):
    suffixes = iter("AAAA" + "BBBB")
    monkeypatch.setattr("certchain.services.chain_client.secrets.choice", lambda alphabet: next(suffixes))
    chain.existing_ids.add(f"CERT-{_current_year()}-001-AAAA")

    cert_id = await chain_client.generate_certificate_id()

    assert cert_id.endswith("-BBBB")


@pytest.mark.anyio
async def test_generated_id_gives_up_after_attempts(chain, chain_client, monkeypatch):
    monkeypatch.setattr("certchain.services.chain_client.secrets.choice", lambda alphabet: "Z")
    chain.existing_ids.add(f"CERT-{_current_year()}-001-ZZZZ")

    with pytest.raises(ChainError):
        await chain_client.generate_certificate_id()


@pytest.mark.anyio
async def test_verify_certificate(chain, chain_client):
    record = _records(1)[0]
    await chain_client.issue_certificate(record)

    found = await chain_client.verify_certificate(record.cert_id)
    assert found["exists"] is True
    assert found["is_valid"] is True
    assert found["student_name"] == record.student_name
    assert found["issue_date"] == record.issue_timestamp

    missing = await chain_client.verify_certificate("CERT-2026-999-NONE")
    assert missing == {"cert_id": "CERT-2026-999-NONE", "exists": False}


@pytest.mark.anyio
async def test_stats_and_authorization(chain, chain_client):
    await chain_client.issue_certificate(_records(1)[0])

    assert await chain_client.get_stats() == {
        "total_certificates": 1,
        "total_institutions": 1,
        "total_revocations": 0,
    }
    assert await chain_client.is_authorized() is True
