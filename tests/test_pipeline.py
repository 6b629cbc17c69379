import subprocess
import zipfile
from pathlib import Path

import fsspec
import pytest

import bts_extract
from bts_extract import (
    ArchiveError,
    FingerprintSource,
    NoImagesError,
    TargetFilesArchive,
    build_parser,
    get_target_path,
    main,
    read_proto_fingerprint,
    run_extract,
)
from imagefactory import PROTO, SYSTEM_BUILD_PROP, build_target_files

RECONSTRUCTED = "acme/acme_panther/panther:13/TQ3A.230805.001/10211839:user/release-keys"
EXPLICIT = "acme/b/b:13/X/1:user/release-keys"


def parse(*argv):
    return build_parser().parse_args(list(argv))


def test_find_images_orders_fixed_then_oem(target_files_path):
    with TargetFilesArchive(str(target_files_path)) as archive:
        assert archive.find_images() == [
            "IMAGES/boot.img",
            "IMAGES/system.img",
            "IMAGES/oem.img",
            "IMAGES/oem_b.img",
            "IMAGES/oem_c.img",
        ]


def test_read_proto_fingerprint(target_files_path):
    with TargetFilesArchive(str(target_files_path)) as archive:
        assert read_proto_fingerprint(archive) == PROTO


def test_missing_member_is_fatal(target_files_path):
    with TargetFilesArchive(str(target_files_path)) as archive:
        with pytest.raises(ArchiveError, match="VENDOR/build.prop"):
            archive.read_member("VENDOR/build.prop")


def test_missing_or_invalid_archive(tmp_path):
    with pytest.raises(ArchiveError, match="File not found"):
        TargetFilesArchive(str(tmp_path / "nope.zip")).__enter__()

    bogus = tmp_path / "bogus.zip"
    bogus.write_bytes(b"not a zip")
    with pytest.raises(ArchiveError, match="Not a zip archive"):
        TargetFilesArchive(str(bogus)).__enter__()


def test_remote_archive_through_fsspec():
    fs = fsspec.filesystem('memory')
    fs.pipe('/bts/target_files.zip', build_target_files({"SYSTEM/build.prop": SYSTEM_BUILD_PROP.encode()}))
    try:
        with TargetFilesArchive('memory://bts/target_files.zip') as archive:
            assert read_proto_fingerprint(archive) == PROTO
    finally:
        fs.rm('/bts/target_files.zip')


def test_run_extract(target_files_path, tmp_path):
    out = tmp_path / "out"
    result = run_extract(parse(str(target_files_path), "-o", str(out), "--backend", "native"))

    assert result['proto_fingerprint'] == PROTO
    assert result['fingerprints'] == [RECONSTRUCTED, EXPLICIT, PROTO]
    assert [r.source for r in result['resolutions']] == [
        FingerprintSource.RECONSTRUCTED, FingerprintSource.EXPLICIT, FingerprintSource.PROTO,
    ]
    assert (out / "fingerprint.txt").read_text() == f"{RECONSTRUCTED}\n{EXPLICIT}\n{PROTO}\n"

    with zipfile.ZipFile(result['bundle']) as bundle:
        assert bundle.namelist() == ["boot.img", "system.img", "oem.img", "oem_b.img", "oem_c.img"]

    assert sorted(p.name for p in out.iterdir()) == sorted([Path(result['bundle']).name, "fingerprint.txt"])


def test_run_extract_keeps_images_on_request(target_files_path, tmp_path):
    out = tmp_path / "out"
    run_extract(parse(str(target_files_path), "-o", str(out), "--backend", "native", "--keep-images"))

    assert (out / "oem.img").is_file()
    assert (out / "boot.img").is_file()
    assert not (out / "oem_b.img.raw").exists()


def test_run_extract_without_tools_uses_proto(monkeypatch, target_files_path, tmp_path):
    monkeypatch.setattr(bts_extract.shutil, 'which', lambda name: None)
    result = run_extract(parse(str(target_files_path), "-o", str(tmp_path / "out"), "--backend", "tools"))
    assert result['fingerprints'] == [PROTO, PROTO, PROTO]


def test_run_extract_leaves_no_raw_files_when_simg2img_fails(monkeypatch, target_files_path, tmp_path):
    def fake_run(cmd, **kwargs):
        if cmd[0] == "/usr/bin/simg2img":
            open(cmd[2], 'wb').close()
            return subprocess.CompletedProcess(cmd, 255, b"", b"")
        return subprocess.CompletedProcess(cmd, 1, b"", b"")

    monkeypatch.setattr(bts_extract.shutil, 'which', lambda name: f"/usr/bin/{name}")
    monkeypatch.setattr(bts_extract.subprocess, 'run', fake_run)

    out = tmp_path / "out"
    result = run_extract(parse(str(target_files_path), "-o", str(out), "--keep-images"))

    assert result['fingerprints'] == [PROTO, PROTO, PROTO]
    assert not list(out.glob("*.raw"))


def test_run_extract_without_images(tmp_path):
    archive = tmp_path / "target_files.zip"
    archive.write_bytes(build_target_files({
        "SYSTEM/build.prop": SYSTEM_BUILD_PROP.encode(),
        "IMAGES/recovery.img": b"\x00",
    }))
    with pytest.raises(NoImagesError):
        run_extract(parse(str(archive), "-o", str(tmp_path / "out"), "--backend", "native"))


def test_run_extract_without_build_prop(tmp_path):
    archive = tmp_path / "target_files.zip"
    archive.write_bytes(build_target_files({"IMAGES/boot.img": b"\x00"}))
    with pytest.raises(ArchiveError, match="SYSTEM/build.prop"):
        run_extract(parse(str(archive), "-o", str(tmp_path / "out"), "--backend", "native"))


def test_get_target_path(monkeypatch, tmp_path):
    assert get_target_path("s3://bucket/tf.zip") == "s3://bucket/tf.zip"
    monkeypatch.setattr('builtins.input', lambda prompt: f"  {tmp_path}/tf.zip  ")
    assert get_target_path(None) == str((tmp_path / "tf.zip").resolve())


def test_main_success(target_files_path, tmp_path):
    out = tmp_path / "out"
    main([str(target_files_path), "-o", str(out), "--backend", "native"])
    assert (out / "fingerprint.txt").read_text().splitlines() == [RECONSTRUCTED, EXPLICIT, PROTO]


def test_main_missing_archive_exits_1(tmp_path, caplog):
    with pytest.raises(SystemExit) as exc:
        main([str(tmp_path / "missing.zip"), "-o", str(tmp_path / "out")])
    assert exc.value.code == 1
    assert "File not found" in caplog.text


def test_main_empty_prompt_exits_1(monkeypatch, tmp_path):
    monkeypatch.setattr('builtins.input', lambda prompt: "")
    with pytest.raises(SystemExit) as exc:
        main(["-o", str(tmp_path / "out")])
    assert exc.value.code == 1
