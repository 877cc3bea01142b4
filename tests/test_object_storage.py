import pytest

from src.core.errors import ObjectNotFoundError, StorageUnavailableError, UploadError
from src.storage.object_storage import (
    MANIFEST_CONTENT_TYPE,
    SEGMENT_CONTENT_TYPE,
    cache_control_for,
    content_type_for,
)

KEY = "videos/hls/vid_1/segment_000.ts"


def test_content_type_mapping():
    assert content_type_for("videos/hls/x/playlist.m3u8", "video/mp4") == MANIFEST_CONTENT_TYPE
    assert content_type_for("videos/hls/x/segment_001.ts", "video/mp4") == SEGMENT_CONTENT_TYPE
    assert content_type_for("videos/original/x.mov", "video/quicktime") == "video/quicktime"
    assert content_type_for("videos/original/x.bin") == "application/octet-stream"


def test_cache_control():
    assert cache_control_for("playlist.m3u8") == "no-cache"
    assert "immutable" in cache_control_for("segment_000.ts")


def test_put_object_applies_content_type_and_overwrites(storage, s3):
    ref = storage.put_object(KEY, b"first", "video/mp4")
    storage.put_object(KEY, b"second", "video/mp4")

    assert ref.url == f"https://cdn.test/{KEY}"
    assert ref.bucket == "test-bucket"
    assert s3.objects[KEY]["body"] == b"second"
    assert s3.objects[KEY]["content_type"] == SEGMENT_CONTENT_TYPE


def test_put_object_failure_raises_upload_error(storage, s3):
    s3.fail_puts.add(".ts")
    with pytest.raises(UploadError):
        storage.put_object(KEY, b"x")


def test_upload_file_streams_from_disk(storage, s3, tmp_path):
    path = tmp_path / "clip.mp4"
    path.write_bytes(b"movie")
    storage.upload_file(path, "videos/original/vid_1.mp4", "video/mp4")
    assert s3.objects["videos/original/vid_1.mp4"]["body"] == b"movie"
    assert s3.objects["videos/original/vid_1.mp4"]["content_type"] == "video/mp4"


def test_download_file(storage, s3, tmp_path):
    storage.put_object("videos/original/vid_1.mp4", b"movie", "video/mp4")
    dest = storage.download_file("videos/original/vid_1.mp4", tmp_path / "copy.mp4")
    assert dest.read_bytes() == b"movie"

    with pytest.raises(ObjectNotFoundError):
        storage.download_file("videos/original/missing.mp4", tmp_path / "missing.mp4")


def test_object_exists_distinguishes_missing_from_unreachable(storage, s3):
    storage.put_object(KEY, b"x")
    assert storage.object_exists(KEY) is True
    assert storage.object_exists("videos/hls/none/playlist.m3u8") is False

    s3.unreachable = True
    with pytest.raises(StorageUnavailableError):
        storage.object_exists(KEY)


@pytest.mark.parametrize(
    "failures, expected_calls, expected_sleeps, expected_status",
    [
        (0, 1, [], "deleted"),
        (1, 2, [2.0], "deleted"),
        (2, 3, [2.0, 4.0], "deleted"),
        (3, 3, [2.0, 4.0], "failed"),
    ],
)
def test_delete_with_retry_bound(storage, s3, sleeps, failures, expected_calls, expected_sleeps, expected_status):
    storage.put_object(KEY, b"x")
    s3.delete_failures[KEY] = failures

    result = storage.delete_object_with_retry(KEY)

    assert len(s3.delete_calls) == expected_calls
    assert sleeps == expected_sleeps
    assert result.status == expected_status
    assert result.attempts == expected_calls
    if expected_status == "failed":
        assert result.success is False
        assert "SlowDown" in result.error
        assert KEY in s3.objects
    else:
        assert result.confirmed
        assert KEY not in s3.objects


def test_delete_missing_object_is_reported_not_confirmed(storage, s3):
    result = storage.delete_object_with_retry("videos/original/gone.mp4")
    assert result.status == "missing"
    assert result.success is True
    assert result.confirmed is False
    assert s3.delete_calls == []


def test_delete_never_raises_when_storage_unreachable(storage, s3, sleeps):
    s3.unreachable = True
    result = storage.delete_object_with_retry(KEY, max_attempts=2)
    assert result.status == "failed"
    assert result.attempts == 2
    assert sleeps == [2.0]


def test_list_objects_follows_continuation(storage, s3):
    for key in ["videos/hls/a/playlist.m3u8", "videos/hls/a/segment_000.ts", "videos/original/a.mp4"]:
        storage.put_object(key, b"12345")
    storage.put_object("thumbnails/a.jpg", b"x")

    objects = storage.list_objects("videos/", page_size=2)

    assert [o.key for o in objects] == [
        "videos/hls/a/playlist.m3u8",
        "videos/hls/a/segment_000.ts",
        "videos/original/a.mp4",
    ]
    assert all(o.size == 5 for o in objects)


def test_list_objects_when_unreachable(storage, s3):
    s3.unreachable = True
    with pytest.raises(StorageUnavailableError):
        storage.list_objects()
