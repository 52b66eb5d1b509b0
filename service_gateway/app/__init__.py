"""
Tenant-isolation gateway service package.

The gateway fronts browser requests to the shared backing store, enforcing:
- Authentication: bearer token -> Principal
- Tenant isolation: every request rewritten to the caller's tenant
- Verbatim relay of backend status codes and bodies

Structure:
- app.main: FastAPI app, routes, and error wiring.
- app.auth: Token authentication.
- app.rewrite: Tenant-safe request rewriting.
- app.adapters: HTTP client for the backing store.
- app.domain: Batch fan-out/fan-in.
"""
