from __future__ import annotations

import json

import pytest

from assetmigrate.errors import ArtifactError
from assetmigrate.manifest import Manifest, ManifestAsset
from assetmigrate.mapping import build_mapping, load_mapping_entries, public_url
from assetmigrate.scanner import ScanReport, UrlOccurrence


def make_report(*urls: str) -> ScanReport:
    return ScanReport(
        generated_at="2024-05-01T00:00:00Z",
        allowlist={},
        files_scanned=1,
        urls=[UrlOccurrence(url=url, count=1, files=["content/a.md"]) for url in urls],
        skipped=[],
    )


def test_public_url_encodes_key():
    assert public_url("https://public.example/", "a b.png") == "https://public.example/a%20b.png"
    assert public_url("https://public.example", "blog/ü.png") == "https://public.example/blog/%C3%BC.png"


def test_every_variant_maps_to_its_asset_key(asset_host):
    canonical = "https://cdn.example/acct/a%20b.png"
    manifest = Manifest(generated_at="t")
    manifest.assets[canonical] = ManifestAsset(canonical_url=canonical, download_url=canonical, final_key="a b.png")
    pending = "https://cdn.example/acct/pending"
    manifest.assets[pending] = ManifestAsset(canonical_url=pending, download_url=pending, key_base="pending")
    variants = [
        "https://cdn.example/acct/tr:w-1500/a%20b.png?tr=w-1500&updatedAt=1",
        "//cdn.example/acct/a%20b.png",
    ]

    mapping = build_mapping(make_report(*variants, pending), manifest, "https://public.example/", asset_host)

    assert mapping.base_url == "https://public.example"
    assert mapping.generated_at == "2024-05-01T00:00:00Z"
    assert mapping.entries == {url: "https://public.example/a%20b.png" for url in variants}
    assert mapping.to_dict()["version"] == 1


def test_load_mapping_entries(tmp_path):
    path = tmp_path / "mapping.json"
    path.write_text(json.dumps({"version": 1, "entries": {"old": "new"}}), encoding="utf-8")
    assert load_mapping_entries(path) == {"old": "new"}

    path.write_text(json.dumps({"version": 1}), encoding="utf-8")
    with pytest.raises(ArtifactError, match="missing entries"):
        load_mapping_entries(path)

    with pytest.raises(ArtifactError):
        load_mapping_entries(tmp_path / "absent.json")
