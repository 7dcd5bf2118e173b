import asyncio

from dynamic_forms.app import create_forms_app


SHIPPING_CONFIG = {
    "fields": [
        {"key": "method", "type": "select", "value": "pickup"},
        {
            "key": "address",
            "type": "input",
            "required": True,
            "logic": [
                {
                    "type": "hidden",
                    "condition": {"type": "fieldValue", "fieldPath": "method", "operator": "equals", "value": "pickup"},
                }
            ],
        },
        {
            "key": "slot",
            "type": "input",
            "logic": [
                {"type": "hidden", "condition": {"type": "async", "asyncFunctionName": "slotFull", "pendingValue": True}}
            ],
        },
        {"key": "submit", "type": "submit"},
    ]
}


async def slot_full(ctx) -> bool:
    await asyncio.sleep(0)
    return False


def make_client():
    app = create_forms_app({"asyncConditions": {"slotFull": slot_full}})
    return app.test_client()


def test_healthz() -> None:
    response = make_client().get("/healthz")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "app": "forms"}


def test_validate_config_lists_issues() -> None:
    client = make_client()

    ok = client.post("/api/validate-config", json={"config": SHIPPING_CONFIG})
    assert ok.get_json() == {"valid": True, "issues": []}

    broken = client.post(
        "/api/validate-config",
        json={"fields": [{"key": "x", "type": "input", "schemas": ["nowhere"]}]},
    )
    payload = broken.get_json()
    assert broken.status_code == 200
    assert payload["valid"] is False
    assert [issue["kind"] for issue in payload["issues"]] == ["unresolved_schema"]


def test_evaluate_returns_field_snapshots() -> None:
    client = make_client()

    response = client.post("/api/evaluate", json={"config": SHIPPING_CONFIG, "value": {"method": "delivery"}})

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["valid"] is False
    assert payload["pending"] is False
    address = payload["fields"]["address"]
    assert address["hidden"] is False
    assert address["errors"] == [{"kind": "required", "message": "This field is required"}]
    assert payload["fields"]["slot"]["hidden"] is False
    assert "submit" not in payload["fields"]


def test_evaluate_without_settling_reports_pending_values() -> None:
    client = make_client()

    response = client.post(
        "/api/evaluate",
        json={"config": SHIPPING_CONFIG, "value": {"address": "Main St 1"}, "settle": False},
    )

    payload = response.get_json()
    assert payload["fields"]["slot"]["hidden"] is True
    assert payload["fields"]["address"]["hidden"] is True
    assert payload["valid"] is True


def test_invalid_config_is_rejected_with_issues() -> None:
    response = make_client().post(
        "/api/evaluate",
        json={"config": {"fields": [{"key": "x", "type": "carousel"}]}},
    )
    assert response.status_code == 422
    assert [issue["kind"] for issue in response.get_json()["issues"]] == ["invalid_field"]


def test_malformed_payloads_are_bad_requests() -> None:
    client = make_client()

    not_json = client.post("/api/evaluate", data="{", content_type="application/json")
    assert not_json.status_code == 400

    wrong_shape = client.post("/api/evaluate", json={"config": [], "value": {}})
    assert wrong_shape.status_code == 400
    assert wrong_shape.get_json() == {"error": "config must be an object"}
