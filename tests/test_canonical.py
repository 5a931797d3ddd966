from __future__ import annotations

import pytest

from assetmigrate.canonical import (
    AssetHost,
    apply_key_suffix,
    canonicalize,
    content_type_from_key,
    derive_key_base,
    extract_urls,
    has_allowed_url_prefix,
    has_image_extension,
    is_content_file_path,
    resolve_final_key,
)


def test_extract_urls_from_mixed_text():
    text = """
        <img src="https://ik.imagekit.io/tempoimmaterial/studio/ink.png?updatedAt=1" />
        const url = 'https://ik.imagekit.io/tempoimmaterial/tr:w-1500/hymns%20for%20calliope/ruined%20piano?updatedAt=2';
        ![alt](//ik.imagekit.io/tempoimmaterial/blog/cover.jpg)
        https://ik.imagekit.io/otheraccount/blog/cover.jpg
    """
    urls = extract_urls(text)
    assert urls == [
        "https://ik.imagekit.io/tempoimmaterial/studio/ink.png?updatedAt=1",
        "https://ik.imagekit.io/tempoimmaterial/tr:w-1500/hymns%20for%20calliope/ruined%20piano?updatedAt=2",
        "//ik.imagekit.io/tempoimmaterial/blog/cover.jpg",
    ]


def test_canonicalize_strips_transforms_and_volatile_params(asset_host):
    canonical = canonicalize("https://cdn.example/acct/tr:w-1500/a%20b.png?tr=w-1500&updatedAt=1", asset_host)
    assert canonical is not None
    assert canonical.canonical_url == "https://cdn.example/acct/a%20b.png"
    assert canonical.download_url == canonical.canonical_url
    assert canonical.path_after_account == "a b.png"
    assert canonical.removed_path_transform
    assert canonical.had_transform_param
    assert canonical.had_updated_at


def test_canonicalize_default_host_download_url():
    url = "https://ik.imagekit.io/tempoimmaterial/tr:w-1500/hymns%20for%20calliope/ruined%20piano?tr=w-1500&updatedAt=1"
    canonical = canonicalize(url)
    assert canonical.download_url == "https://ik.imagekit.io/tempoimmaterial/hymns%20for%20calliope/ruined%20piano"


def test_canonicalize_keeps_other_query_params(asset_host):
    canonical = canonicalize("https://cdn.example/acct/x.png?v=2&updatedAt=3&w=10", asset_host)
    assert canonical.canonical_url == "https://cdn.example/acct/x.png?v=2&w=10"
    assert canonical.remaining_query == [("v", "2"), ("w", "10")]


def test_canonicalize_protocol_relative(asset_host):
    canonical = canonicalize("//cdn.example/acct/blog/x.png", asset_host)
    assert canonical.canonical_url == "https://cdn.example/acct/blog/x.png"
    assert not canonical.removed_path_transform


@pytest.mark.parametrize(
    "url",
    [
        "https://other.example/acct/x.png",
        "https://cdn.example/someone-else/x.png",
        "ftp://cdn.example/acct/x.png",
        "cdn.example/acct/x.png",
        "https://cdn.example/",
        "https://cdn.example/acct/a%FF.png",
        "",
    ],
)
def test_canonicalize_rejects_unusable_urls(asset_host, url):
    assert canonicalize(url, asset_host) is None


@pytest.mark.parametrize(
    "url",
    [
        "https://cdn.example/acct/tr:w-1500/a%20b.png?tr=w-1500&updatedAt=1",
        "//cdn.example/acct/blog//x.png?updatedAt=9",
        "http://cdn.example/acct/tr-h-20/studio/ink?v=a%20b&tr=x",
        "https://cdn.example/acct/tr:w-1/tr:h-2/nested/p.webp",
    ],
)
def test_canonicalize_is_idempotent(asset_host, url):
    first = canonicalize(url, asset_host)
    second = canonicalize(first.canonical_url, asset_host)
    assert second.canonical_url == first.canonical_url
    assert second.download_url == first.download_url
    assert second.path_after_account == first.path_after_account


def test_canonical_host_is_case_insensitive():
    host = AssetHost(host="cdn.example", account="acct")
    canonical = canonicalize("https://CDN.Example/acct/x.png", host)
    assert canonical.canonical_url == "https://cdn.example/acct/x.png"


def test_derive_key_base():
    assert derive_key_base("studio/ink.png", "content-images") == "content-images/studio/ink.png"
    assert derive_key_base("studio/ink.png", "./images/") == "images/studio/ink.png"
    assert derive_key_base("studio/ink.png", None) == "studio/ink.png"
    assert derive_key_base("", "images") is None


def test_resolve_final_key():
    assert resolve_final_key("studio/ink", "image/png") == "studio/ink.png"
    assert resolve_final_key("studio/ink", "image/jpeg; charset=binary") == "studio/ink.jpg"
    assert resolve_final_key("studio/ink.png", "image/jpeg") == "studio/ink.png"
    assert resolve_final_key("studio/ink", "image/avif") == "studio/ink"
    assert resolve_final_key("studio/ink", None) == "studio/ink"


def test_apply_key_suffix():
    assert apply_key_suffix("studio/ink.png", "abcd1234") == "studio/ink-abcd1234.png"
    assert apply_key_suffix("studio/ink", "abcd1234") == "studio/ink-abcd1234"
    assert apply_key_suffix("studio/ink.png", None) == "studio/ink.png"


def test_extension_helpers():
    assert has_image_extension("a/B.JPEG")
    assert not has_image_extension("a/b.pdf")
    assert content_type_from_key("x.svg") == "image/svg+xml"
    assert content_type_from_key("x") is None


def test_scope_helpers():
    assert is_content_file_path("content/anything.md", [])
    assert is_content_file_path("src/routes/blog/+page.svelte", ["blog"])
    assert not is_content_file_path("src/routes/about/+page.svelte", ["blog"])
    assert has_allowed_url_prefix("studio/ink.png", ["studio/"])
    assert not has_allowed_url_prefix("misc/ink.png", ["studio/"])
    assert not has_allowed_url_prefix("", ["studio/"])
