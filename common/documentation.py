"""
OpenAPI customisation for the ledger service
"""
from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi
from typing import Dict, Any

ERROR_RESPONSE_SCHEMA = {
    "type": "object",
    "required": ["success", "error", "timestamp"],
    "properties": {
        "success": {"type": "boolean", "example": False},
        "error": {
            "type": "object",
            "required": ["code", "message"],
            "properties": {
                "code": {"type": "string", "example": "ITEM_NOT_FOUND"},
                "message": {"type": "string", "example": "deck deck-42 not found"},
                "field": {"type": "string"},
                "context": {"type": "object"},
            },
        },
        "timestamp": {"type": "number", "example": 1699123456.789},
        "trace_id": {"type": "string", "example": "abc123def456"},
    },
}

def _error_ref(description: str) -> Dict[str, Any]:
    return {
        "description": description,
        "content": {"application/json": {"schema": {"$ref": "#/components/schemas/ErrorResponse"}}},
    }

STANDARD_RESPONSES = {
    "400": _error_ref("Bad Request"),
    "404": _error_ref("Not Found"),
    "502": _error_ref("Payment processor unavailable"),
    "503": _error_ref("Storage unavailable, retry with backoff"),
}

def create_custom_openapi(app: FastAPI, title: str, version: str, description: str) -> Dict[str, Any]:
    """Create OpenAPI schema with the standard error body attached to every operation"""

    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=title,
        version=version,
        description=description,
        routes=app.routes,
    )

    components = openapi_schema.setdefault("components", {})
    components["securitySchemes"] = {
        "bearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Internal JWT (audience 'ledger') for catalog and maintenance calls",
        }
    }
    components.setdefault("schemas", {})["ErrorResponse"] = ERROR_RESPONSE_SCHEMA

    for path_item in openapi_schema["paths"].values():
        for operation in path_item.values():
            if isinstance(operation, dict) and "responses" in operation:
                for status, response in STANDARD_RESPONSES.items():
                    operation["responses"].setdefault(status, response)

    openapi_schema["tags"] = [
        {"name": "Purchases", "description": "Deck purchases settled from the platform balance"},
        {"name": "Top-ups", "description": "Balance funding through processor checkout"},
        {"name": "Webhooks", "description": "Signed processor event delivery"},
        {"name": "Accounts", "description": "Read views over balances and ownership"},
        {"name": "Creators", "description": "Connected-account onboarding and payouts"},
        {"name": "Administration", "description": "Catalog publishing and maintenance"},
        {"name": "Health", "description": "Liveness"},
    ]

    app.openapi_schema = openapi_schema
    return app.openapi_schema

PURCHASE_DOCS = """
## Purchase a deck

Settles immediately when the buyer's balance covers the price: the buyer is
debited, the creator is credited their share and ownership is granted in one
transaction.

When the balance is short the purchase is deferred and the response carries
`status: redirectRequired` with a checkout `url` for the missing amount. Once
the processor confirms that top-up the purchase settles without another
request.

Retrying a purchase for a deck the buyer already owns returns `settled`
again and moves no money.
"""

WEBHOOK_DOCS = """
## Processor webhook

Raw body plus `Stripe-Signature` header. The signature is verified over the
raw bytes before anything is parsed. Each event id is applied at most once,
so redelivery is safe.

- `200 {"received": true}`: applied, duplicate, or ignored event type
- `400`: signature invalid; the processor should not retry
- `5xx`: transient failure; the processor retries delivery
"""
