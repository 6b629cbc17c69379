import pytest

from imagefactory import SYSTEM_BUILD_PROP, build_ext4_image, build_target_files, to_sparse


@pytest.fixture
def oem_image_path(tmp_path):
    """An ext4 OEM image whose /oem/build.prop only overrides brand and name."""
    path = tmp_path / "oem.img"
    path.write_bytes(build_ext4_image({
        "/oem/build.prop": b"ro.product.brand=acme\nro.product.name=acme_panther\n",
        "/oem/etc/readme.txt": b"not a property file\n",
    }))
    return path


@pytest.fixture
def target_files_path(tmp_path):
    """A target_files zip with two ext4 OEM images, one sparse, and one unreadable image."""
    explicit = build_ext4_image({
        "/build.prop": b"ro.vendor.build.fingerprint=acme/b/b:13/X/1:user/release-keys\n",
    }, extents=True)

    path = tmp_path / "target_files.zip"
    path.write_bytes(build_target_files({
        "SYSTEM/build.prop": SYSTEM_BUILD_PROP.encode(),
        "IMAGES/boot.img": b"ANDROID!" + b"\x00" * 2040,
        "IMAGES/system.img": b"\x00" * 4096,
        "IMAGES/oem_c.img": b"\x01" * 5000,
        "IMAGES/oem_b.img": to_sparse(explicit),
        "IMAGES/oem.img": build_ext4_image({
            "/oem/build.prop": b"ro.product.brand=acme\nro.product.name=acme_panther\n",
        }),
        "IMAGES/recovery.img": b"\x00" * 16,
        "IMAGES/oem/nested.img": b"\x00" * 16,
    }))
    return path
