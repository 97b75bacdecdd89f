"""Tests for mail_harvester.providers and credential resolution."""

from __future__ import annotations

import pytest

from mail_harvester.config import PipelineConfig
from mail_harvester.errors import ProviderUnavailableError
from mail_harvester.providers import get_provider, list_providers
from mail_harvester.schemas import JobCreate, MailboxCredentials


class TestProviders:
    def test_dreamhost_available(self):
        preset = get_provider("dreamhost")
        assert preset.host == "imap.dreamhost.com"
        assert preset.port == 993

    def test_lookup_case_insensitive(self):
        assert get_provider("DreamHost").id == "dreamhost"

    def test_unavailable(self):
        with pytest.raises(ProviderUnavailableError, match="not available"):
            get_provider("gmail")

    def test_unknown(self):
        with pytest.raises(ProviderUnavailableError, match="Unknown provider"):
            get_provider("carrier-pigeon")

    def test_list(self):
        presets = list_providers()
        assert [p.id for p in presets if p.available] == ["dreamhost"]
        assert all(p.name.endswith("(Coming Soon)") for p in presets if not p.available)


class TestMailboxCredentials:
    def test_provider_fills_host(self):
        creds = MailboxCredentials(provider="dreamhost", username="u", password="p")
        cfg = creds.to_imap_config()
        assert (cfg.host, cfg.port, cfg.use_ssl) == ("imap.dreamhost.com", 993, True)
        assert cfg.password.get_secret_value() == "p"

    def test_explicit_host(self):
        cfg = MailboxCredentials(host="mail.local", port=143, use_ssl=False, username="u", password="p").to_imap_config()
        assert (cfg.host, cfg.port, cfg.use_ssl) == ("mail.local", 143, False)

    def test_host_required(self):
        with pytest.raises(ProviderUnavailableError):
            MailboxCredentials(username="u", password="p").to_imap_config()

    def test_pipeline_overrides(self):
        body = JobCreate(host="h", username="u", password="p", folder="INBOX", shard_size=5)
        cfg = body.pipeline_config(PipelineConfig())
        assert cfg.shard_size == 5
        assert cfg.fetch_batch_size == 10
