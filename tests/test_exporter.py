"""
Tests for PNG/JSON export, zip bundles and bulk export.

Remote avatars are served through httpx.MockTransport so no network is used.
"""

import base64
import io
import json
import zipfile

import httpx
import pytest
from PIL import Image

from tavern_cards.avatar import AvatarLoader, normalize_avatar
from tavern_cards.card_codec import decode_card_png
from tavern_cards.cards import build_character, build_export_data
from tavern_cards.config import Settings
from tavern_cards.errors import ImageLoadError
from tavern_cards.exporter import CardExporter, ExportFormat, export_filename_base
from tavern_cards.importer import parse_character_card, parse_character_json
from tavern_cards.models import ImportFormat
from tavern_cards.png_text import iter_text_chunks
from tests.conftest import ARIA
from tests.helpers import make_avatar


def _transport(content=None, status_code=200, calls=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        return httpx.Response(status_code, content=content or b"")

    return httpx.MockTransport(handler)


def _exporter(tmp_path, store=None, transport=None):
    settings = Settings(data_dir=tmp_path)
    return CardExporter(settings, store=store, avatar_loader=AvatarLoader(settings, transport=transport))


def _names(archive_bytes):
    with zipfile.ZipFile(io.BytesIO(archive_bytes)) as archive:
        return sorted(archive.namelist())


def _read(archive_bytes, name):
    with zipfile.ZipFile(io.BytesIO(archive_bytes)) as archive:
        return archive.read(name)


class TestAvatar:
    def test_normalize_converts_to_rgba_png(self):
        output = normalize_avatar(make_avatar(fmt="JPEG"))
        with Image.open(io.BytesIO(output)) as image:
            assert image.format == "PNG"
            assert image.mode == "RGBA"
            assert image.size == (4, 3)

    def test_normalize_strips_text_chunks(self, aria_png):
        assert list(iter_text_chunks(normalize_avatar(aria_png))) == []

    def test_normalize_rejects_garbage(self):
        with pytest.raises(ImageLoadError):
            normalize_avatar(b"definitely not an image")

    async def test_data_url(self, tmp_path, avatar_png):
        url = "data:image/png;base64," + base64.b64encode(avatar_png).decode("ascii")
        assert await AvatarLoader(Settings(data_dir=tmp_path)).load(url) == avatar_png

    async def test_local_path(self, tmp_path, avatar_png):
        path = tmp_path / "avatar.png"
        path.write_bytes(avatar_png)
        assert await AvatarLoader(Settings(data_dir=tmp_path)).load(str(path)) == avatar_png

    async def test_remote_fetch(self, tmp_path, avatar_png):
        loader = AvatarLoader(Settings(data_dir=tmp_path), transport=_transport(avatar_png))
        assert await loader.load("https://example.com/a.png") == avatar_png

    async def test_remote_failure(self, tmp_path):
        loader = AvatarLoader(Settings(data_dir=tmp_path), transport=_transport(status_code=404))
        with pytest.raises(ImageLoadError):
            await loader.load("https://example.com/missing.png")

    async def test_empty_url(self, tmp_path):
        with pytest.raises(ImageLoadError):
            await AvatarLoader(Settings(data_dir=tmp_path)).load("")


class TestExportCharacter:
    async def test_aria_round_trip(self, tmp_path, aria_png, library):
        record = parse_character_card(aria_png, "aria.png", store=library)
        filename, content = await _exporter(tmp_path, store=library).export_character(record)

        assert filename == "aria.png"
        decoded = decode_card_png(content)
        assert decoded["spec"] == "chara_card_v2"
        reimported = build_character(decoded, import_format=ImportFormat.PNG)
        assert reimported.name == "Aria"
        assert reimported.description == "A guide."
        assert reimported.first_message == "Hello traveler."
        assert build_export_data(reimported) == build_export_data(record)

    async def test_single_card_chunk_after_export(self, tmp_path, aria_png, library):
        record = parse_character_card(aria_png, "aria.png", store=library)
        _, content = await _exporter(tmp_path, store=library).export_character(record)
        assert [chunk.keyword for chunk in iter_text_chunks(content)] == ["chara"]

    async def test_store_is_checked_before_url(self, tmp_path, avatar_png, library):
        calls = []
        record = parse_character_json(json.dumps(ARIA))
        library.store(record.id, avatar_png)
        exporter = _exporter(tmp_path, store=library, transport=_transport(calls=calls))
        filename, _ = await exporter.export_character(record)
        assert filename == "aria.png"
        assert calls == []

    async def test_remote_avatar(self, tmp_path, avatar_png):
        calls = []
        record = parse_character_json(json.dumps(ARIA))
        exporter = _exporter(tmp_path, transport=_transport(avatar_png, calls=calls))
        _, content = await exporter.export_character(record)
        assert calls == [record.avatar_url]
        assert decode_card_png(content)["data"]["name"] == "Aria"

    async def test_avatar_failure_propagates(self, tmp_path):
        record = parse_character_json(json.dumps(ARIA))
        exporter = _exporter(tmp_path, transport=_transport(status_code=500))
        with pytest.raises(ImageLoadError):
            await exporter.export_character(record)

    async def test_json_export(self, tmp_path):
        record = parse_character_json(json.dumps(ARIA), "aria.json")
        filename, content = await _exporter(tmp_path).export_character(record, ExportFormat.JSON)
        assert filename == "aria.json"
        assert json.loads(content)["data"]["first_mes"] == "Hello traveler."

    async def test_custom_keyword(self, tmp_path, aria_png, library):
        settings = Settings(data_dir=tmp_path, export_keyword="ccv3")
        record = parse_character_card(aria_png, "aria.png", store=library)
        _, content = await CardExporter(settings, store=library).export_character(record)
        assert [chunk.keyword for chunk in iter_text_chunks(content)] == ["ccv3"]

    async def test_bundle_with_quick_replies(self, tmp_path, aria_png, library):
        record = parse_character_card(aria_png, "aria.png", store=library)
        record.qr_list = [{"id": 1, "label": "Greet", "message": "Hello!"}]
        filename, content = await _exporter(tmp_path, store=library).export_character(record, bundle=True)
        assert filename == "aria.zip"
        assert _names(content) == ["aria.png", "aria_qr.json"]
        qr = json.loads(_read(content, "aria_qr.json"))
        assert qr["name"] == "Aria QR"
        assert qr["qrList"][0]["label"] == "Greet"

    async def test_bundle_falls_back_to_json(self, tmp_path):
        record = parse_character_json(json.dumps(ARIA), "aria.json")
        exporter = _exporter(tmp_path, transport=_transport(status_code=404))
        _, content = await exporter.export_character(record, bundle=True)
        assert _names(content) == ["aria.json"]


class TestExportBulk:
    async def test_collections_quick_replies_and_formats(self, tmp_path, aria_png, avatar_png, library):
        aria = parse_character_card(aria_png, "aria.png", store=library)
        aria.tags = ["heroes", "guides"]
        aria.qr_list = [{"id": 1, "label": "Greet"}]
        aria.qr_file_name = "greetings.json"

        kael = parse_character_json(json.dumps({"name": "Kael", "tags": "villains"}), "kael.json")

        mira = build_character({"name": "Mira Sol"}, import_format=ImportFormat.PNG)
        library.store(mira.id, avatar_png)

        filename, content = await _exporter(tmp_path, store=library).export_bulk(
            [aria, kael, mira], collections=["guides", "villains"]
        )

        assert filename.startswith("tavern_export_") and filename.endswith(".zip")
        assert _names(content) == [
            "guides/aria/aria.png",
            "guides/aria/greetings.json",
            "mira_sol.png",
            "villains/kael.json",
        ]
        assert decode_card_png(_read(content, "mira_sol.png"))["data"]["name"] == "Mira Sol"

    async def test_png_failure_falls_back_to_json(self, tmp_path):
        record = build_character({"name": "Lost"}, import_format=ImportFormat.PNG)
        record.avatar_url = "https://example.com/gone.png"
        exporter = _exporter(tmp_path, transport=_transport(status_code=404))
        _, content = await exporter.export_bulk([record])
        assert _names(content) == ["lost.json"]
        assert json.loads(_read(content, "lost.json"))["data"]["name"] == "Lost"


class TestFilenames:
    def test_original_filename_without_extension(self):
        record = build_character({"name": "x"}, import_format=ImportFormat.PNG, filename="my.card.png")
        assert export_filename_base(record) == "my.card"

    def test_name_is_sanitized(self):
        record = build_character({"name": "Dr. Who?"}, import_format=ImportFormat.PNG)
        assert export_filename_base(record) == "dr__who_"

    def test_cjk_name_is_kept(self):
        record = build_character({"name": "小明 2"}, import_format=ImportFormat.PNG)
        assert export_filename_base(record) == "小明_2"

    def test_directories_in_original_filename_are_dropped(self):
        record = build_character({"name": "x"}, import_format=ImportFormat.PNG, filename="../../x.png")
        assert export_filename_base(record) == "x"
        record.original_filename = "..\\evil\\y.png"
        assert export_filename_base(record) == "y"

    def test_dot_dot_filename_falls_back_to_name(self):
        record = build_character({"name": "Dr. Who?"}, import_format=ImportFormat.PNG, filename="..")
        assert export_filename_base(record) == "dr__who_"

    async def test_bundle_qr_name_stays_in_archive_root(self, tmp_path):
        record = parse_character_json(json.dumps(ARIA), "aria.json")
        record.qr_list = [{"id": 1, "label": "Hi"}]
        record.qr_file_name = "../../qr.json"
        _, content = await _exporter(tmp_path).export_character(record, ExportFormat.JSON, bundle=True)
        assert _names(content) == ["aria.json", "qr.json"]
