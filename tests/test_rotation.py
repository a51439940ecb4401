from __future__ import annotations

import pytest

from graphbatch.batch import Operation
from graphbatch.infrastructure.credential_pool import Credential, CredentialPool
from graphbatch.infrastructure.error_handling import (
    AllCredentialsExhaustedError,
    AmbiguousTransientError,
    DecisionKind,
    PermanentError,
    TokenDecodeError,
    TransientError,
)
from graphbatch.integrations.rotation import RotatingGraphClient

from .conftest import AMBIGUOUS, CAMPAIGN_ID, NETWORK, USER_TOKEN, graph_error, no_sleep, op_error

OPS = [Operation("POST", "act_123/adsets", {"name": "Adset - Copy 1", "campaign_id": CAMPAIGN_ID}, name="create-parent-0")]


def test_success_records_usage_on_the_credential_used(client, pool, graph):
    results = client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert results[0]["code"] == 200
    assert graph.credentials_used == ["main_app"]
    assert pool.get("main_app").calls_used == 1
    assert pool.get("backup_1").calls_used == 0


def test_rate_limit_rotates_to_next_credential(client, pool, graph):
    graph.rate_limit("main_app")
    client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert graph.credentials_used == ["main_app", "backup_1"]
    assert pool.get("main_app").exhausted
    assert pool.get("backup_1").calls_used == 1
    assert client.stats()["rotations"] == 1


def test_rate_limit_inside_a_batch_result_rotates(client, pool, graph):
    graph.fail_op("Adset - Copy 1", op_error(17, "User request limit reached"))
    results = client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert "User request limit reached" in results[0]["body"]
    assert pool.get("main_app").exhausted
    assert client.stats()["rotations"] == 1

    client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert graph.credentials_used == ["main_app", "backup_1"]


def test_other_operation_errors_keep_the_credential(client, pool, graph):
    graph.fail_op("Adset - Copy 1", op_error(100, "Invalid targeting"))
    client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert not pool.get("main_app").exhausted
    assert client.stats()["rotations"] == 0


def test_all_credentials_rate_limited(client, pool, graph):
    for cred_id in ("main_app", "backup_1", "backup_2"):
        graph.rate_limit(cred_id)
    with pytest.raises(AllCredentialsExhaustedError) as exc:
        client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert graph.credentials_used == ["main_app", "backup_1", "backup_2"]
    assert exc.value.summary["exhausted"] == 3
    assert exc.value.seconds_until_reset == pytest.approx(3600)
    assert pool.select(USER_TOKEN) is None


def test_attempts_are_capped_below_pool_size(graph, pool):
    client = RotatingGraphClient(graph, pool, max_attempts=2, sleep=no_sleep)
    for cred_id in ("main_app", "backup_1", "backup_2"):
        graph.rate_limit(cred_id)
    with pytest.raises(AllCredentialsExhaustedError):
        client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert len(graph.credentials_used) == 2
    assert not pool.get("backup_2").exhausted


def test_permanent_errors_surface_without_retry(client, graph):
    graph.fail_request(lambda: graph_error(100, "Invalid parameter"))
    with pytest.raises(PermanentError) as exc:
        client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert exc.value.decision.kind is DecisionKind.PERMANENT
    assert exc.value.code == 100
    assert len(graph.credentials_used) == 1


def test_ambiguous_errors_are_never_retried(client, graph):
    graph.fail_request(AMBIGUOUS, commit=True)
    with pytest.raises(AmbiguousTransientError):
        client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert len(graph.batches) == 1
    assert len(graph.adsets()) == 1


def test_transient_group_submission_is_not_retried(client, graph):
    graph.fail_request(NETWORK)
    with pytest.raises(TransientError) as exc:
        client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert exc.value.request_level
    assert len(graph.batches) == 1


def test_transient_reads_retry_with_backoff(graph, pool):
    sleeps = []
    client = RotatingGraphClient(graph, pool, sleep=sleeps.append)
    graph.fail_reads(NETWORK(), times=2)
    assert client.read_children(CAMPAIGN_ID, user_access_token=USER_TOKEN) == []
    assert len(sleeps) == 2
    assert 0.9 <= sleeps[0] <= 1.1
    assert 1.8 <= sleeps[1] <= 2.2
    assert graph.credentials_used == ["main_app"] * 3


def test_transient_read_budget_runs_out(client, graph):
    graph.fail_reads(NETWORK(), times=10)
    with pytest.raises(TransientError):
        client.read_grandchildren(CAMPAIGN_ID, user_access_token=USER_TOKEN)
    assert len(graph.credentials_used) == 6


def test_unclassified_read_failure_retried_once(client, graph):
    graph.fail_reads(ValueError("odd"), times=5)
    with pytest.raises(TransientError):
        client.read_children(CAMPAIGN_ID, user_access_token=USER_TOKEN)
    assert len(graph.credentials_used) == 2


def test_invalid_token_on_backup_rotates(client, pool, graph):
    graph.fail_request(lambda: graph_error(190, "Invalid OAuth access token"))
    client.submit_group(OPS)
    assert graph.credentials_used == ["backup_1", "backup_2"]
    assert pool.get("backup_1").exhausted


def test_invalid_token_on_primary_is_permanent(client, pool, graph):
    graph.fail_request(lambda: graph_error(190, "Error validating access token"))
    with pytest.raises(PermanentError):
        client.submit_group(OPS, user_access_token=USER_TOKEN)
    assert not pool.get("main_app").exhausted


def _encrypted_pool(clock):
    return CredentialPool(
        [
            Credential("b1", "B1", priority=1, access_token="enc:bad", encrypted=True),
            Credential("b2", "B2", priority=2, access_token="enc:good", encrypted=True),
        ],
        clock=clock,
        notifier=lambda *a: None,
    )


def _decode(token: str) -> str:
    if token == "enc:bad":
        raise TokenDecodeError("bad padding")
    return token[len("enc:"):]


def test_token_decoder_failure_rotates(graph, clock):
    pool = _encrypted_pool(clock)
    client = RotatingGraphClient(graph, pool, token_decoder=_decode, sleep=no_sleep)
    assert client.call(lambda cred: cred.access_token) == "good"
    assert pool.get("b1").exhausted
    assert pool.get("b2").calls_used == 1


def test_delete_of_missing_object_is_not_an_error(client, graph):
    assert client.delete("999999", user_access_token=USER_TOKEN) is False
    adset_id = graph.add_adset("Adset - Copy 1")
    assert client.delete(adset_id, user_access_token=USER_TOKEN) is True
    assert graph.deleted == [adset_id]


def test_rotation_status(client, graph):
    client.submit_group(OPS, user_access_token=USER_TOKEN)
    status = client.rotation_status()
    assert status["stats"]["successful"] == 1
    assert status["stats"]["success_rate"] == 100.0
    assert {c["id"] for c in status["credentials"]} == {"main_app", "backup_1", "backup_2"}
    assert status["summary"]["total_used"] == 1
