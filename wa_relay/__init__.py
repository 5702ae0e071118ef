"""Relay pending tenant notifications from a remote API to a WhatsApp connector.

The relay polls the remote endpoint for every configured tenant, forwards each
new message to the connector, reports the delivery status back and remembers
which message ids were already attempted so a restart never resends them.

Example:
    Wiring the pieces by hand::

        from wa_relay.core import RelayCore
        from wa_relay.api import create_app

        core = RelayCore(tenant_ids=["7"], connector=connector, source=source,
                         reporter=reporter, dedup=DedupStore("sent_ids.json"))
        app = create_app(core, api_token="secret")
"""

__version__ = "0.1.0"
