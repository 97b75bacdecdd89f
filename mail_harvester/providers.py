"""Known IMAP provider presets.

Callers may name a provider instead of passing host and port.  Presets
that have not been verified against the live service are listed but
marked unavailable.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from .errors import ProviderUnavailableError


class ProviderPreset(BaseModel):
    """Connection defaults for one mail provider."""

    id: str = Field(description="Preset identifier")
    name: str = Field(description="Display name")
    host: str = Field(description="IMAP hostname")
    port: int = Field(default=993, description="IMAP port")
    use_ssl: bool = Field(default=True, description="Connect over TLS")
    available: bool = Field(default=False, description="Whether the preset may be used")


def _preset(id: str, name: str, host: str, port: int = 993, available: bool = False) -> ProviderPreset:
    label = name if available else f"{name} (Coming Soon)"
    return ProviderPreset(id=id, name=label, host=host, port=port, available=available)


_PRESETS: dict[str, ProviderPreset] = {
    p.id: p
    for p in [
        _preset("dreamhost", "Dreamhost Webmail", "imap.dreamhost.com", available=True),
        _preset("gmail", "Gmail", "imap.gmail.com"),
        _preset("outlook", "Outlook / Office 365", "outlook.office365.com"),
        _preset("yahoo", "Yahoo Mail", "imap.mail.yahoo.com"),
        _preset("aol", "AOL Mail", "imap.aol.com"),
        _preset("icloud", "iCloud Mail", "imap.mail.me.com"),
        _preset("zoho", "Zoho Mail", "imap.zoho.com"),
        _preset("fastmail", "FastMail", "imap.fastmail.com"),
        _preset("mailcom", "Mail.com", "imap.mail.com"),
        _preset("gmx", "GMX Mail", "imap.gmx.com"),
        _preset("webde", "Web.de", "imap.web.de"),
        _preset("att", "AT&T Mail", "imap.mail.att.net"),
        _preset("verizon", "Verizon Mail", "imap.verizon.net"),
        _preset("godaddy", "GoDaddy Email", "imap.secureserver.net"),
        _preset("namecheap", "Namecheap Private Email", "mail.privateemail.com"),
        _preset("amazon", "Amazon WorkMail", "imap.mail.us-west-2.awsapps.com"),
        # Bridge-based providers run a local IMAP bridge.
        _preset("protonmail", "ProtonMail", "127.0.0.1", port=1143),
        _preset("tutanota", "Tutanota", "127.0.0.1", port=1143),
    ]
}


def list_providers() -> list[ProviderPreset]:
    return list(_PRESETS.values())


def get_provider(provider_id: str) -> ProviderPreset:
    """Return the preset for *provider_id* if it exists and may be used."""
    preset = _PRESETS.get(provider_id.lower())
    if preset is None:
        raise ProviderUnavailableError(f"Unknown provider: {provider_id}")
    if not preset.available:
        raise ProviderUnavailableError(f"Provider {preset.name} is not available yet")
    return preset
