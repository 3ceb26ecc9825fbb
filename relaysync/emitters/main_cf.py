"""
Postfix main.cf emitter.

The file is derived entirely from the SyncSnapshot; only the virtual lookup
section depends on where (and how) the two map files are written.
"""

from __future__ import annotations

from typing import AsyncIterator, List

from relaysync.domain.models import SyncSnapshot
from relaysync.emitters.abstract import AbstractConfigEmitter, iterate
from relaysync.infrastructure.writer import DEFAULT_HIGH_WATER_MARK

TLS_PROTOCOLS = "!SSLv2, !SSLv3, !TLSv1, !TLSv1.1"

HELO_RESTRICTIONS = "permit_mynetworks, reject_invalid_helo_hostname, reject_non_fqdn_helo_hostname"
SENDER_RESTRICTIONS = "reject_non_fqdn_sender, reject_unknown_sender_domain"
RELAY_RESTRICTIONS = "permit_mynetworks, reject_unauth_destination"
RECIPIENT_RESTRICTIONS = (
    "permit_mynetworks, reject_non_fqdn_recipient, reject_unknown_recipient_domain, "
    "reject_unauth_destination"
)


def _directive(key: str, value: object) -> str:
    return f"{key} = {value}"


def render_main_cf(snapshot: SyncSnapshot) -> List[str]:
    """Render main.cf as a list of lines, sections in fixed order."""
    map_type = snapshot.connection.map_type
    if snapshot.prerender_aliases:
        alias_maps = f"hash:{snapshot.alias_map_path}"
    else:
        alias_maps = f"{map_type}:{snapshot.alias_map_path}"
    milters = ", ".join(snapshot.milters)

    return [
        "# identity",
        _directive("myhostname", snapshot.hostname),
        _directive("myorigin", "$myhostname"),
        _directive("mydestination", "localhost"),
        _directive("inet_interfaces", "all"),
        _directive("inet_protocols", "all"),
        "",
        "# TLS",
        _directive("smtpd_tls_cert_file", snapshot.tls_cert_file),
        _directive("smtpd_tls_key_file", snapshot.tls_key_file),
        _directive("smtpd_tls_security_level", "may"),
        _directive("smtp_tls_security_level", "may"),
        _directive("smtpd_tls_auth_only", "yes"),
        _directive("smtpd_tls_mandatory_protocols", TLS_PROTOCOLS),
        _directive("smtpd_tls_protocols", TLS_PROTOCOLS),
        _directive("smtp_tls_protocols", TLS_PROTOCOLS),
        "",
        "# virtual lookups",
        _directive("virtual_alias_domains", f"{map_type}:{snapshot.domains_map_path}"),
        _directive("virtual_alias_maps", alias_maps),
        "",
        "# hardening",
        _directive("smtpd_helo_required", "yes"),
        _directive("disable_vrfy_command", "yes"),
        _directive("strict_rfc821_envelopes", "yes"),
        _directive("smtpd_delay_reject", "yes"),
        _directive("smtpd_helo_restrictions", HELO_RESTRICTIONS),
        _directive("smtpd_sender_restrictions", SENDER_RESTRICTIONS),
        _directive("smtpd_relay_restrictions", RELAY_RESTRICTIONS),
        _directive("smtpd_recipient_restrictions", RECIPIENT_RESTRICTIONS),
        "",
        "# limits",
        _directive("message_size_limit", snapshot.message_size_limit),
        _directive("mailbox_size_limit", snapshot.mailbox_size_limit),
        _directive("biff", "no"),
        _directive("append_dot_mydomain", "no"),
        _directive("compatibility_level", "3.6"),
        "",
        "# content filter",
        _directive("milter_protocol", 6),
        _directive("milter_default_action", "accept"),
        _directive("smtpd_milters", milters),
        _directive("non_smtpd_milters", milters),
    ]


class MainConfigEmitter(AbstractConfigEmitter):
    """
    Writes main.cf for the snapshot.
    """

    name: str = "main_cf"
    description: str = "Postfix main.cf (identity, TLS, lookups, hardening, limits, filter)."

    def __init__(self, snapshot: SyncSnapshot, high_water_mark: int = DEFAULT_HIGH_WATER_MARK) -> None:
        super().__init__(snapshot.main_cf_path, high_water_mark=high_water_mark)
        self.snapshot = snapshot

    def lines(self) -> AsyncIterator[str]:
        return iterate(render_main_cf(self.snapshot))


__all__ = ["MainConfigEmitter", "render_main_cf"]
