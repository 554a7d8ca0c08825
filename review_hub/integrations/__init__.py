"""review_hub.integrations — adapters for systems we do not own.

All outbound HTTP calls to Autodesk Construction Cloud go through
``acc_gateway.ACCGateway``, never via bare ``requests`` calls in services
or blueprints.  Every call is:
  - Authenticated (bearer token injected by the gateway)
  - Retried with exponential backoff
  - Circuit-broken per project link to prevent cascade failures

Current adapters:
  acc_gateway.ACCGateway — ACC RFI / Submittal REST API
  file_share             — byte access to the project network share
"""
