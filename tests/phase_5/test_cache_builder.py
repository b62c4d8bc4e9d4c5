"""Tests for the generation-swapped expansion index builder."""
from __future__ import annotations

import json
from typing import List

import pytest

from answerlink.config import AppConfig
from answerlink.contracts import Cluster, ClusterMember, Locale, OverlapRecord, SelectionMode
from answerlink.errors import CacheUnavailableError, DataIntegrityError
from answerlink.expansion import CacheBuilder, IndexKeys

US = Locale(country="US", language="en")
GB = Locale(country="GB", language="en")


def _member(answer_id: str, question_id: str, mode: SelectionMode = SelectionMode.SINGLE, full: bool = False):
    return ClusterMember(answer_id=answer_id, question_id=question_id, selection_mode=mode, full_coverage=full)


def _clusters(locale: Locale = US) -> List[Cluster]:
    return [
        Cluster(
            cluster_id="c_smoker",
            locale=locale,
            representative_answer_id="a1",
            members=[_member("a1", "q1", full=True), _member("b1", "q2", SelectionMode.MULTI)],
        ),
        Cluster(
            cluster_id="c_daily",
            locale=locale,
            representative_answer_id="a2",
            members=[_member("a2", "q1"), _member("d1", "q4")],
        ),
    ]


@pytest.fixture(name="builder")
def fixture_builder(fake_redis, app_config: AppConfig) -> CacheBuilder:
    return CacheBuilder(fake_redis, app_config.cache.model_copy(update={"write_batch_size": 2}))


def _decode(fake_redis, key: str, field: str):
    return json.loads(fake_redis.hashes[key][field])


def test_build_projects_every_family(builder: CacheBuilder, fake_redis) -> None:
    overlaps = [OverlapRecord(locale=US, source_cluster_id="c_daily", implied_cluster_id="c_smoker")]
    generation = builder.build(US, _clusters(), overlaps, generation="g1")
    keys = builder.keys(US)
    assert generation == "g1"
    assert fake_redis.strings[keys.generation] == "g1"
    assert _decode(fake_redis, keys.family("a2c"), "a2") == {"direct": ["c_daily"], "implied": ["c_smoker"]}
    assert _decode(fake_redis, keys.family("a2c"), "a1") == {"direct": ["c_smoker"], "implied": []}
    assert _decode(fake_redis, keys.family("q2c"), "q1") == ["c_daily", "c_smoker"]
    assert _decode(fake_redis, keys.family("c2q"), "c_smoker") == ["q1", "q2"]
    assert _decode(fake_redis, keys.cluster_body("g1", "c_smoker"), "q2") == {
        "answer_ids": ["b1"],
        "selection_mode": "multi",
        "full_coverage": False,
        "question_clusters": ["c_smoker"],
    }
    assert _decode(fake_redis, keys.cluster_body("g1", "c_smoker"), "q1")["full_coverage"] is True
    assert not any(":staging:" in key for key in fake_redis.keys())


def test_overlaps_to_unknown_clusters_are_skipped(builder: CacheBuilder, fake_redis) -> None:
    overlaps = [OverlapRecord(locale=US, source_cluster_id="c_daily", implied_cluster_id="c_gone")]
    builder.build(US, _clusters(), overlaps, generation="g1")
    assert _decode(fake_redis, builder.keys(US).family("a2c"), "a2")["implied"] == []


def test_swap_renames_families_with_the_pointer_in_one_transaction(builder: CacheBuilder, fake_redis) -> None:
    builder.build(US, _clusters(), generation="g1")
    assert ["rename", "rename", "rename", "set"] in fake_redis.executed
    staged_batches = [batch for batch in fake_redis.executed if set(batch) == {"hset"}]
    assert len(staged_batches) > 1


def test_failed_swap_keeps_the_previous_generation(builder: CacheBuilder, fake_redis) -> None:
    builder.build(US, _clusters(), generation="g1")
    keys = builder.keys(US)
    live_before = dict(fake_redis.hashes[keys.family("a2c")])
    fake_redis.fail_commands.add("rename")
    with pytest.raises(CacheUnavailableError):
        builder.build(US, _clusters()[:1], generation="g2")
    assert fake_redis.strings[keys.generation] == "g1"
    assert fake_redis.hashes[keys.family("a2c")] == live_before
    assert not any(keys.generation_of(key) == "g2" for key in fake_redis.keys())


def test_older_generations_are_swept(builder: CacheBuilder, fake_redis) -> None:
    keys = builder.keys(US)
    for generation in ("g1", "g2", "g3"):
        builder.build(US, _clusters(), generation=generation)
    generations = {keys.generation_of(key) for key in fake_redis.keys()} - {None}
    assert generations == {"g2", "g3"}
    assert builder.current_generation(US) == "g3"


def test_empty_build_removes_live_families(builder: CacheBuilder, fake_redis) -> None:
    builder.build(US, _clusters(), generation="g1")
    builder.build(US, [], generation="g2")
    keys = builder.keys(US)
    assert keys.family("a2c") not in fake_redis.hashes
    assert fake_redis.strings[keys.generation] == "g2"


def test_clear_only_touches_its_locale(builder: CacheBuilder, fake_redis) -> None:
    builder.build(US, _clusters(), generation="g1")
    builder.build(GB, _clusters(GB), generation="g1")
    removed = builder.clear(US)
    assert removed > 0
    assert not any(key.startswith(builder.keys(US).root + ":") for key in fake_redis.keys())
    assert builder.current_generation(GB) == "g1"
    assert builder.current_generation(US) is None


def test_clear_reports_unreachable_redis(builder: CacheBuilder, fake_redis) -> None:
    fake_redis.fail_commands.add("scan_iter")
    with pytest.raises(CacheUnavailableError):
        builder.clear(US)


def test_cross_locale_records_are_refused(builder: CacheBuilder, fake_redis) -> None:
    with pytest.raises(DataIntegrityError):
        builder.build(US, _clusters(GB), generation="g1")
    with pytest.raises(DataIntegrityError):
        builder.build(US, _clusters(), [OverlapRecord(locale=GB, source_cluster_id="x", implied_cluster_id="y")])
    assert fake_redis.keys() == []


def test_index_keys_are_locale_scoped() -> None:
    keys = IndexKeys(prefix="answerlink", locale=US)
    assert keys.family("a2c") == "answerlink:US_en:a2c"
    assert keys.cluster_body("g7", "c1") == "answerlink:US_en:cq:g7:c1"
    assert keys.generation_of("answerlink:US_en:staging:g7:q2c") == "g7"
    assert keys.generation_of("answerlink:US_en:a2c") is None
