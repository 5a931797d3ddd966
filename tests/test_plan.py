from __future__ import annotations

import pytest

from assetmigrate.errors import ConfigError, KeyCollisionError
from assetmigrate.plan import Plan, build_plan, suffix_length
from assetmigrate.scanner import ScanReport, UrlOccurrence


def make_report(*entries: tuple[str, list[str]]) -> ScanReport:
    return ScanReport(
        generated_at="2024-05-01T00:00:00Z",
        allowlist={},
        files_scanned=3,
        urls=[UrlOccurrence(url=url, count=len(files), files=files) for url, files in entries],
        skipped=[],
    )


def test_variants_group_under_one_canonical_asset(asset_host):
    report = make_report(
        ("https://cdn.example/acct/tr:w-300/studio/ink.png", ["content/b.md"]),
        ("https://cdn.example/acct/studio/ink.png?updatedAt=5", ["content/a.md", "content/b.md"]),
        ("https://cdn.example/acct/blog/cover", ["src/x.ts"]),
    )

    plan = build_plan(report, key_prefix="images", asset_host=asset_host)

    assert plan.generated_at == "2024-05-01T00:00:00Z"
    assert plan.key_prefix == "images"
    assert [asset.canonical_url for asset in plan.assets] == [
        "https://cdn.example/acct/blog/cover",
        "https://cdn.example/acct/studio/ink.png",
    ]
    cover, ink = plan.assets
    assert cover.key_base == "images/blog/cover"
    assert not cover.has_extension
    assert ink.key_base == "images/studio/ink.png"
    assert ink.has_extension
    assert ink.variants == [
        "https://cdn.example/acct/studio/ink.png?updatedAt=5",
        "https://cdn.example/acct/tr:w-300/studio/ink.png",
    ]
    assert ink.sources == ["content/a.md", "content/b.md"]
    assert not ink.needs_suffix


def test_plan_is_deterministic_regardless_of_input_order(asset_host):
    entries = [
        ("https://cdn.example/acct/b.png", ["content/2.md"]),
        ("https://cdn.example/acct/a.png?updatedAt=1", ["content/1.md"]),
        ("https://cdn.example/acct/tr:h-10/a.png", ["content/3.md"]),
    ]
    forward = build_plan(make_report(*entries), asset_host=asset_host)
    backward = build_plan(make_report(*reversed(entries)), asset_host=asset_host)
    assert forward.to_dict() == backward.to_dict()


def test_key_collision_requires_suffix_mode(asset_host):
    report = make_report(
        ("https://cdn.example/acct/studio/ink.png?v=1", ["content/a.md"]),
        ("https://cdn.example/acct/studio/ink.png?v=2", ["content/a.md"]),
    )

    with pytest.raises(KeyCollisionError) as excinfo:
        build_plan(report, asset_host=asset_host)
    assert excinfo.value.collisions == {
        "studio/ink.png": [
            "https://cdn.example/acct/studio/ink.png?v=1",
            "https://cdn.example/acct/studio/ink.png?v=2",
        ]
    }
    assert "--key-suffix" in str(excinfo.value)

    plan = build_plan(report, key_suffix_mode="sha8", asset_host=asset_host)
    assert [asset.needs_suffix for asset in plan.assets] == [True, True]
    assert plan.key_suffix_mode == "sha8"


def test_http_and_https_are_distinct_assets_with_one_key(asset_host):
    report = make_report(
        ("http://cdn.example/acct/blog/a.png", ["content/a.md"]),
        ("https://cdn.example/acct/blog/a.png", ["content/a.md"]),
    )
    with pytest.raises(KeyCollisionError):
        build_plan(report, asset_host=asset_host)


def test_suffix_length():
    assert suffix_length(None) is None
    assert suffix_length("sha8") == 8
    assert suffix_length("sha64") == 64
    for mode in ("sha", "sha3", "sha65", "md5"):
        with pytest.raises(ConfigError):
            suffix_length(mode)


def test_plan_round_trips_through_dict(asset_host):
    report = make_report(("https://cdn.example/acct/blog/a.png", ["content/a.md"]))
    plan = build_plan(report, asset_host=asset_host)
    data = plan.to_dict()
    assert data["keyPrefix"] is None
    assert data["assets"][0]["keyBase"] == "blog/a.png"
    assert Plan.from_dict(data).to_dict() == data
