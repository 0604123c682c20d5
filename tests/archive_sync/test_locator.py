"""Repository URL parsing tests."""

from __future__ import annotations

import pytest

from ArchiveSync.errors import ConfigurationError
from ArchiveSync.locator import ObjectRef, parse_repo_url


@pytest.mark.parametrize(
    ("url", "expected"),
    [
        ("s3://my-bucket/releases", ObjectRef("my-bucket", "releases/")),
        ("s3://my-bucket/releases/", ObjectRef("my-bucket", "releases/")),
        ("s3://my-bucket/a/b/c", ObjectRef("my-bucket", "a/b/c/")),
        ("s3://my-bucket", ObjectRef("my-bucket", "")),
        ("s3://my-bucket/", ObjectRef("my-bucket", "")),
        ("s3://My-Bucket/releases", ObjectRef("My-Bucket", "releases/")),
    ],
)
def test_parse_repo_url(url: str, expected: ObjectRef) -> None:
    assert parse_repo_url(url) == expected


@pytest.mark.parametrize("url", ["", "releases/app", "s3:///releases", "not a url"])
def test_parse_repo_url_rejects_malformed(url: str) -> None:
    with pytest.raises(ConfigurationError):
        parse_repo_url(url)


def test_key_for_appends_to_prefix() -> None:
    ref = parse_repo_url("s3://my-bucket/releases")
    assert ref.key_for("app-3.zip") == "releases/app-3.zip"
