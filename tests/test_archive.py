import io
import zipfile

import pytest

from tender_pipeline.archive import is_feed_member, iter_documents, unpack
from tender_pipeline.errors import ArchiveError

from feed_samples import make_archive, make_entry, make_feed


def test_unpack_returns_feed_documents_in_archive_order():
    """Qualifying members are returned in the order they appear in the ZIP."""
    payload = make_archive(
        {
            "licitacionesPerfilesContratanteCompleto3.atom": make_feed([make_entry("A")]),
            "licitacionesPerfilesContratanteCompleto3_20261001_1.atom": make_feed([make_entry("B")]),
        }
    )

    docs = unpack(payload)

    assert [d.name for d in docs] == [
        "licitacionesPerfilesContratanteCompleto3.atom",
        "licitacionesPerfilesContratanteCompleto3_20261001_1.atom",
    ]
    assert "Expediente: A" in docs[0].text
    assert "Expediente: B" in docs[1].text


def test_unpack_ignores_non_feed_members():
    """Readmes and .atom files without the feed name markers are skipped."""
    payload = make_archive(
        {
            "README.txt": "not a feed",
            "otros_contratos.atom": make_feed([make_entry("X")]),
            "Licitaciones_2026.ATOM": make_feed([make_entry("Y")]),
        }
    )

    docs = unpack(payload)

    assert [d.name for d in docs] == ["Licitaciones_2026.ATOM"]


def test_unpack_raises_on_garbage_payload():
    with pytest.raises(ArchiveError, match="not a readable ZIP"):
        unpack(b"this is not a zip file")


def test_unpack_raises_when_no_feed_members():
    payload = make_archive({"README.txt": "hello"})

    with pytest.raises(ArchiveError, match="No feed documents"):
        unpack(payload)


def test_unreadable_member_is_skipped_but_others_continue():
    """A member that is not valid UTF-8 is skipped, not fatal."""
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("licitaciones_bad.atom", b"\xff\xfe\xfa broken")
        zf.writestr("licitaciones_good.atom", make_feed([make_entry("OK")]))

    docs = list(iter_documents(buf.getvalue()))

    assert [d.name for d in docs] == ["licitaciones_good.atom"]


def test_unpack_raises_when_every_member_is_unreadable():
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("licitaciones_bad.atom", b"\xff\xfe\xfa broken")

    with pytest.raises(ArchiveError, match="could be read"):
        unpack(buf.getvalue())


@pytest.mark.parametrize(
    "name, expected",
    [
        ("licitacionesPerfilesContratanteCompleto3.atom", True),
        ("2026/LICITACIONES_10.ATOM", True),
        ("contratosCompleto.atom", True),
        ("licitaciones.atom/", False),
        ("licitaciones.xml", False),
        ("otros_contratos.atom", False),
        ("", False),
    ],
)
def test_is_feed_member_by_name(name, expected):
    assert is_feed_member(name) is expected
