from __future__ import annotations

import json
from dataclasses import replace

import pytest

from graphbatch.batch import BatchOrchestrator, PairSpec, PayloadWeight
from graphbatch.batch import orchestrator as orchestrator_module
from graphbatch.infrastructure.error_handling import AllCredentialsExhaustedError

from .conftest import AMBIGUOUS, CAMPAIGN_ID, RATE_LIMITED, USER_TOKEN, graph_error, no_sleep, op_error


@pytest.fixture
def announcements(monkeypatch):
    sent = []
    monkeypatch.setattr(orchestrator_module, "notify", lambda text, severity="info", topic="default": sent.append((severity, text)))
    return sent


def _run(orchestrator, specs, **kwargs):
    kwargs.setdefault("user_access_token", USER_TOKEN)
    return orchestrator.run(CAMPAIGN_ID, specs, **kwargs)


def test_clean_run(orchestrator, graph, make_specs, announcements):
    report = _run(orchestrator, make_specs(5))
    v = report.verification
    assert (v.expected_count, v.actual_parent_count, v.actual_child_count, v.shortfall) == (5, 5, 5, 0)
    assert report.status_counts == {"complete": 5}
    assert report.parents_created == report.children_created == 5
    assert report.groups_executed == 3
    assert report.succeeded
    assert report.failures == []
    assert announcements == []


def test_orphan_is_recovered_with_a_single_child(orchestrator, graph, make_specs):
    graph.fail_op("Ad - Copy 4", op_error(100, "Invalid creative"))
    report = _run(orchestrator, make_specs(5))

    v = report.verification
    assert (v.expected_count, v.actual_parent_count, v.actual_child_count) == (5, 5, 5)
    assert v.orphans_deleted == 0
    assert v.shortfall == 0
    assert report.orphans_recovered == 1
    assert report.status_counts == {"complete": 5}
    assert [(f.pair_index, f.kind) for f in report.failures] == [(3, "orphan")]
    assert len(graph.adsets()) == 5
    # Three group requests, then one single-op request for the missing child
    assert [len(b) for b in graph.batches] == [4, 4, 2, 1]


def test_rate_limited_operation_moves_the_retry_to_another_credential(orchestrator, pool, graph, make_specs):
    graph.fail_op("Ad - Copy 1", op_error(17, "User request limit reached"))
    report = _run(orchestrator, make_specs(2))

    assert pool.get("main_app").exhausted
    assert graph.credentials_used[0] == "main_app"
    assert "main_app" not in graph.credentials_used[1:]
    assert report.orphans_recovered == 1
    assert report.status_counts == {"complete": 2}
    assert report.verification.actual_child_count == 2


def test_repeated_parent_failure_ends_in_shortfall(orchestrator, graph, make_specs, announcements):
    graph.fail_op("Adset - Copy 2", op_error(100, "Invalid targeting"), times=2)
    report = _run(orchestrator, make_specs(3))

    v = report.verification
    assert v.shortfall == 1
    assert v.actual_child_count == 2
    assert v.orphans_deleted == 0
    assert graph.orphan_adsets() == []
    assert report.status_counts == {"complete": 2, "shortfall": 1}
    assert report.retried_failures == 1
    assert not report.succeeded
    assert announcements and announcements[0][0] == "warn"
    assert "shortfall 1" in announcements[0][1]


def test_permanently_rejected_groups_are_not_retried(orchestrator, graph, make_specs, announcements):
    graph.fail_request(lambda: graph_error(200, "Permissions error: ad account not owned by user"), times=100)
    report = _run(orchestrator, make_specs(4))

    assert [len(b) for b in graph.batches] == [4, 4]
    assert report.retried_failures == 0
    assert report.status_counts == {"shortfall": 4}
    assert report.verification.shortfall == 4
    assert graph.adsets() == []
    assert not report.succeeded


def test_ambiguous_group_is_never_resent(orchestrator, graph, make_specs):
    graph.fail_request(AMBIGUOUS, commit=True, when=lambda ops: ops[0].get("name") == "create-parent-0")
    report = _run(orchestrator, make_specs(4))

    assert report.status_counts == {"unknown": 2, "complete": 2}
    assert len(graph.batches) == 2
    assert len(graph.adsets()) == 4
    assert len(graph.ads()) == 4
    assert report.verification.actual_child_count == 4
    assert report.verification.deletions == 0


def test_stale_orphans_are_cleaned_up(orchestrator, graph, make_specs):
    stale = graph.add_adset("Adset - Copy 7")
    report = _run(orchestrator, make_specs(2))
    assert report.verification.orphans_deleted == 1
    assert stale in graph.deleted

    again = orchestrator.run(CAMPAIGN_ID, [], user_access_token=USER_TOKEN, expected_total=2)
    assert again.verification.deletions == 0
    assert again.verification.actual_child_count == 2


def test_original_parent_counts_toward_expected_total(orchestrator, graph, make_specs):
    original = graph.add_adset("Spring Adset")
    graph.add_ad(original, "Spring Ad")
    report = _run(orchestrator, make_specs(2), original_parent_id=original)
    v = report.verification
    assert v.expected_count == 3
    assert v.actual_child_count == 3
    assert original not in graph.deleted


def test_original_parent_without_ads_is_not_counted(orchestrator, graph, make_specs):
    original = graph.add_adset("Spring Adset")
    report = _run(orchestrator, make_specs(2), original_parent_id=original)
    v = report.verification
    assert (v.expected_count, v.actual_child_count, v.shortfall) == (2, 2, 0)
    assert original not in graph.deleted
    assert report.succeeded


def test_exhaustion_mid_run_skips_retries(orchestrator, graph, make_specs, announcements):
    graph.fail_op("Ad - Copy 1", op_error(100, "Invalid creative"))
    graph.fail_request(RATE_LIMITED, times=100, when=lambda ops: ops[0].get("name") == "create-parent-2")
    report = _run(orchestrator, make_specs(4))

    assert report.aborted
    assert report.status_counts == {"orphan": 1, "complete": 1, "total_failure": 2}
    # No retry requests once the pool is exhausted
    assert all(len(b) == 4 for b in graph.batches)
    assert not report.verification.verified
    assert announcements


def test_exhaustion_before_first_request_raises(orchestrator, graph, make_specs):
    for cred_id in ("main_app", "backup_1", "backup_2"):
        graph.rate_limit(cred_id)
    with pytest.raises(AllCredentialsExhaustedError):
        _run(orchestrator, make_specs(2))


def test_specs_must_be_indexed_by_position(orchestrator):
    specs = [PairSpec(1, 1, {"name": "Adset - Copy 1"}, {"name": "Ad - Copy 1"})]
    with pytest.raises(ValueError):
        _run(orchestrator, specs)


def test_failure_details_are_capped(client, builder, settings, graph, make_specs):
    orchestrator = BatchOrchestrator(
        client,
        builder=builder,
        settings=replace(settings, failure_detail_limit=2, retry_cap=0),
        sleep=no_sleep,
    )
    for n in range(1, 5):
        graph.fail_op(f"Adset - Copy {n}", op_error(100, "Invalid targeting"))
    report = _run(orchestrator, make_specs(4))
    assert len(report.failures) == 2
    assert report.status_counts == {"shortfall": 4}


def test_weight_picks_group_size(orchestrator, settings):
    assert orchestrator.policy_for(PayloadWeight.HEAVY).pairs_per_group == settings.pairs_per_group


def test_report_serializes(orchestrator, graph, make_specs):
    graph.fail_op("Adset - Copy 1", op_error(100, "Invalid targeting"), times=2)
    report = _run(orchestrator, make_specs(2))
    data = report.to_dict()
    json.dumps(data)
    assert data["requested"] == 2
    assert data["failures"][0]["kind"] == "total_failure"
    assert data["verification"]["shortfall"] == 1
    assert data["succeeded"] is False
