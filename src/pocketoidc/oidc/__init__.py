# OpenID Connect protocol core.
# Created: 2026-10-12
#
# Transport-free: every component is plain async Python driven by Provider.
# The FastAPI layer in pocketoidc.api only parses HTTP and maps errors.
