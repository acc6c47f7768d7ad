import datetime

import pytest

from builders import stanza
from deblayer.errors import ParseError
from deblayer.index import (
    parse_packages,
    parse_relation_groups,
    parse_release,
    read_installed_packages,
    release_is_expired,
)
from deblayer.models import Alternative
from deblayer.version import VersionConstraint

RELEASE = """\
Origin: Debian
Label: Debian
Suite: stable
Codename: bookworm
Date: Sat, 10 Jun 2023 08:53:33 UTC
Valid-Until: Sat, 17 Jun 2023 08:53:33 UTC
Architectures: amd64 arm64
Components: main contrib
MD5Sum:
 0d3b4cbcaf2a1f1ab5b4b0ac9be9c7e0 1234 main/binary-amd64/Packages
SHA256:
 5f3d8bd8ce5bd4a4ff7ba9f2d7b7b0e6f1a77ad1b8f3d43b0d6d5c2c1e4f1a0b 1234 main/binary-amd64/Packages
 9A8C55D49AB3E0F27E59B8E2B1B0D3C1A0FBB1B4D40F8E3C1B87DB6F4F2E7C11 456 main/binary-amd64/Packages.xz
"""


def test_parse_release_manifest():
    release, manifest = parse_release(RELEASE)
    assert release["Codename"] == "bookworm"
    assert set(manifest) == {"main/binary-amd64/Packages", "main/binary-amd64/Packages.xz"}
    entry = manifest["main/binary-amd64/Packages.xz"]
    assert entry.size == 456
    assert entry.sha256 == entry.sha256.lower()


def test_parse_release_requires_sha256():
    with pytest.raises(ParseError):
        parse_release("Origin: Debian\nSuite: stable\n")


def test_release_expiry():
    release, _ = parse_release(RELEASE)
    before = datetime.datetime(2023, 6, 12, tzinfo=datetime.UTC)
    after = datetime.datetime(2023, 6, 18, tzinfo=datetime.UTC)
    assert not release_is_expired(release, now=before)
    assert release_is_expired(release, now=after)


def test_parse_packages_fields():
    text = stanza(
        "curl",
        "7.68.0-1",
        depends="libc6 (>= 2.17), libcurl4 (= 7.68.0-1) | libcurl3, zlib1g",
        pre_depends="dpkg (>= 1.15)",
        provides="http-client, curl-bin (= 7.68.0-1)",
        conflicts="curl-ssl (<< 7.0)",
        breaks="old-curl",
        size=1024,
    )
    (curl,) = parse_packages(text, "amd64")

    assert curl.label == "curl=7.68.0-1"
    assert curl.size == 1024
    assert [[str(alt) for alt in group] for group in curl.depends] == [
        ["libc6 (>= 2.17)"],
        ["libcurl4 (= 7.68.0-1)", "libcurl3"],
        ["zlib1g"],
    ]
    assert curl.pre_depends == ((Alternative(name="dpkg", version_constraint=">= 1.15"),),)
    assert curl.provided_version("curl-bin") == (True, "7.68.0-1")
    assert curl.provided_version("http-client") == (True, None)
    assert curl.provided_version("wget") == (False, None)
    assert curl.conflicts == (Alternative(name="curl-ssl", version_constraint=VersionConstraint.parse("<< 7.0")),)
    assert [alt.name for alt in curl.breaks] == ["old-curl"]


def test_parse_packages_filters_architecture():
    text = "\n".join(
        [
            stanza("native", "1.0"),
            stanza("docs", "1.0", architecture="all"),
            stanza("foreign", "1.0", architecture="arm64"),
        ]
    )
    assert [p.name for p in parse_packages(text, "amd64")] == ["native", "docs"]
    assert [p.name for p in parse_packages(text, "arm64")] == ["docs", "foreign"]


def test_relation_architecture_restrictions():
    groups = parse_relation_groups("libfoo [amd64], libbar [!amd64] | libbaz, python3:any (>= 3.9)", "amd64")
    assert [[alt.name for alt in group] for group in groups] == [["libfoo"], ["libbaz"], ["python3"]]


def test_missing_required_field():
    text = "Package: broken\nVersion: 1.0\nArchitecture: amd64\nFilename: pool/b.deb\nSize: 1\n"
    with pytest.raises(ParseError, match="SHA256"):
        parse_packages(text, "amd64")


def test_invalid_version_in_index():
    with pytest.raises(ParseError):
        parse_packages(stanza("broken", "1.0 beta"), "amd64")


def test_read_installed_packages(tmp_path):
    status = tmp_path / "status"
    status.write_text(
        "Package: libc6\nStatus: install ok installed\nVersion: 2.31-0ubuntu9\n\n"
        "Package: removed\nStatus: deinstall ok config-files\nVersion: 1.0\n\n"
        "Package: zlib1g\nStatus: install ok installed\nVersion: 1:1.2.11\n"
    )
    assert read_installed_packages(status) == {"libc6": "2.31-0ubuntu9", "zlib1g": "1:1.2.11"}
    assert read_installed_packages(tmp_path / "missing") == {}
