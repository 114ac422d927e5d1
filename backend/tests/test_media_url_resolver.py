"""Tests for media reference resolution and encoder URL sanitizing."""

from src.services.media_url_resolver import sanitize_for_encoder


class TestSanitizeForEncoder:
    def test_plain_url_unchanged(self):
        url = "https://storage.test/bucket/a/b.mp3?X-Goog-Signature=abc&x=1"
        assert sanitize_for_encoder(url) == url

    def test_emoji_is_percent_encoded(self):
        url = "https://storage.test/bucket/music 🎵.mp3"

        sanitized = sanitize_for_encoder(url)

        assert sanitized == "https://storage.test/bucket/music%20%F0%9F%8E%B5.mp3"
        assert sanitized.isascii()

    def test_idempotent(self):
        url = "https://storage.test/bücket/ファイル 🎬.mp4?sig=a%2Fb"

        once = sanitize_for_encoder(url)

        assert sanitize_for_encoder(once) == once

    def test_existing_escapes_preserved(self):
        url = "https://storage.test/a%20b.mp3?X-Goog-Credential=sa%40p.iam%2F20260101"
        assert sanitize_for_encoder(url) == url

    def test_control_characters_encoded(self):
        assert sanitize_for_encoder("https://x.test/a\nb") == "https://x.test/a%0Ab"


class TestMediaURLResolver:
    def test_external_url_passes_through(self, resolver, fake_storage):
        url = "https://cdn.example.com/clip.mp4"

        assert resolver.resolve(url) == url
        assert fake_storage.signed == []

    def test_relative_proxy_reference_is_signed(self, resolver, fake_storage):
        resolved = resolver.resolve("/api/storage/media/projects/p1/music.mp3")

        assert resolved == "https://storage.test/bucket/projects/p1/music.mp3?X-Goog-Signature=abc"
        assert fake_storage.signed == [("projects/p1/music.mp3", 180)]

    def test_absolute_proxy_reference_on_own_host_is_signed(self, resolver, fake_storage):
        resolver.resolve("http://api.test/api/storage/media/a%20b.mp3")

        assert fake_storage.signed == [("a b.mp3", 180)]

    def test_proxy_path_on_foreign_host_passes_through(self, resolver):
        url = "https://other.test/api/storage/media/a.mp3"
        assert resolver.resolve(url) == url

    def test_empty_key_passes_through(self, resolver):
        assert resolver.resolve("/api/storage/media/") == "/api/storage/media/"

    def test_resolve_for_encoder_sanitizes(self, resolver):
        resolved = resolver.resolve_for_encoder("/api/storage/media/音楽.mp3")

        assert resolved.isascii()
        assert resolved.startswith("https://storage.test/bucket/")

    def test_resolve_layer_sources_copies(self, resolver):
        layers = [
            {"id": "l1", "type": "audio", "props": {"src": "/api/storage/media/a.mp3"}},
            {"id": "l2", "type": "text", "props": {"text": "hello"}},
            {"id": "l3", "type": "video"},
        ]

        resolved = resolver.resolve_layer_sources(layers)

        assert resolved[0]["props"]["src"].startswith("https://storage.test/")
        assert resolved[1] == layers[1]
        assert resolved[2] == layers[2]
        # Input is left untouched
        assert layers[0]["props"]["src"] == "/api/storage/media/a.mp3"
