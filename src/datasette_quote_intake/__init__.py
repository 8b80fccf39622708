"""Datasette plugin for public quote-request intake and triage."""

from datasette_quote_intake.plugin import register_routes, skip_csrf, startup
