# PocketOIDC HTTP layer.
# Created: 2026-10-12
#
# FastAPI application and routers for the OpenID Provider endpoints.
