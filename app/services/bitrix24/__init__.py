"""Bitrix24 Open Channels integration.

Links a workspace to a Bitrix24 portal and keeps the objects this service
registers inside the portal in a working state.

Submodules:
- client: REST client with bounded retry for read methods
- errors: Error taxonomy shared by every submodule
- identity: Portal and workspace resolution, linking tokens
- oauth: Code exchange, token refresh, webhook credentials
- install: Install/uninstall callbacks from the portal
- state: Connector health state machine
- connector: Connector registration, dedup and rebuild
- channels: Open Lines and per-line activation, placement handler
- mappings: Instance to line mappings
- bots: Chat bot registration
- automation: Automation robot and SMS provider registration
- setup: One-click provisioning run
- diagnostics: Live diagnosis and repair
- actions: Named-action dispatcher used by the HTTP surface
- locks: Per-integration serialization
"""
