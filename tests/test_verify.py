from __future__ import annotations

from assetmigrate.verify import find_offenders, main

OLD = "https://ik.imagekit.io/tempoimmaterial/blog/a.png"


def test_find_offenders_counts_urls(tmp_path, write_file, asset_host):
    write_file(tmp_path, "content/a.md", "https://cdn.example/acct/x.png //cdn.example/acct/y.png")
    write_file(tmp_path, "content/b.md", "https://public.example/x.png")

    offenders = find_offenders(tmp_path, ["content/a.md", "content/b.md"], asset_host)

    assert [(o.file, o.count, o.unreadable) for o in offenders] == [("content/a.md", 2, False)]


def test_clean_tree_passes(tmp_path, write_file, capsys):
    write_file(tmp_path, "content/a.md", "https://public.example/blog/a.png")

    assert main(["--root", str(tmp_path)]) == 0

    out = capsys.readouterr().out
    assert "[OK] no residual URL 'ik.imagekit.io/tempoimmaterial'" in out
    assert "Checked: 1" in out
    assert "NG: 0" in out


def test_residual_urls_fail(tmp_path, write_file, capsys):
    write_file(tmp_path, "content/a.md", f"{OLD} {OLD}")
    write_file(tmp_path, "src/lib/data.ts", f"'{OLD}'")

    assert main(["--root", str(tmp_path)]) == 1
    out = capsys.readouterr().out
    assert "[NG] residual URL 'ik.imagekit.io/tempoimmaterial' found in 1 file(s)" in out
    assert "- content/a.md (2)" in out
    assert "data.ts" not in out

    assert main(["--root", str(tmp_path), "--include-src"]) == 1
    out = capsys.readouterr().out
    assert "- src/lib/data.ts (1)" in out
    assert "NG: 2" in out


def test_unreadable_file_fails(tmp_path, write_file, capsys):
    write_file(tmp_path, "content/bad.md", b"\xff\xfe\xfa")

    assert main(["--root", str(tmp_path)]) == 1
    assert "[NG] unreadable file: content/bad.md" in capsys.readouterr().out
