import asyncio
import logging

import httpx
import pytest

from dynamic_forms.config import validate_form_config
from dynamic_forms.derivations import without_path
from dynamic_forms.form import DynamicForm


CITIES = {"0150": "Oslo", "5003": "Bergen", "9008": "Tromso"}


def city_form(derivation: dict, **kwargs) -> DynamicForm:
    return DynamicForm(
        {
            "fields": [
                {"key": "country", "type": "select", "value": "NO"},
                {"key": "zip", "type": "input", "value": "0150"},
                {"key": "city", "type": "input", "value": "Unknown", "logic": [{"type": "derivation", **derivation}]},
            ]
        },
        **kwargs,
    )


def async_city_form(function, **derivation) -> DynamicForm:
    return city_form(
        {"asyncFunctionName": "cityForZip", "debounceMs": 0, **derivation},
        custom_fn_config={"asyncDerivations": {"cityForZip": function}},
    )


@pytest.mark.asyncio
async def test_async_derivation_applies_only_the_latest_result() -> None:
    started = []
    finished = []

    async def city_for_zip(ctx) -> str | None:
        zip_code = ctx.root["zip"]
        started.append(zip_code)
        await asyncio.sleep(0.01)
        finished.append(zip_code)
        return CITIES.get(zip_code)

    form = async_city_form(city_for_zip, dependsOn=["zip"])
    form.set_value("zip", "5003")
    await asyncio.sleep(0)
    assert form.get_value("city") == "Unknown"

    form.set_value("zip", "9008")
    await form.settle(timeout=1)

    assert started == ["5003", "9008"]
    assert finished == ["9008"]
    assert form.get_value("city") == "Tromso"
    await form.aclose()


@pytest.mark.asyncio
async def test_failed_async_derivation_keeps_the_current_value(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dynamic_forms")

    async def city_for_zip(ctx) -> str:
        zip_code = ctx.root["zip"]
        if zip_code not in CITIES:
            raise LookupError(zip_code)
        return CITIES[zip_code]

    form = async_city_form(city_for_zip)
    await form.settle(timeout=1)
    assert form.get_value("city") == "Oslo"

    form.set_value("zip", "0000")
    await form.settle(timeout=1)

    assert form.get_value("city") == "Oslo"
    assert "derivation_failed" in [record.getMessage() for record in caplog.records]

    form.set_value("zip", "5003")
    await form.settle(timeout=1)
    assert form.get_value("city") == "Bergen"
    await form.aclose()


@pytest.mark.asyncio
async def test_editing_the_derived_field_does_not_rerun_the_derivation() -> None:
    calls = []

    async def city_for_zip(ctx) -> str | None:
        calls.append(ctx.root["zip"])
        return CITIES.get(ctx.root["zip"])

    form = async_city_form(city_for_zip)
    await form.settle(timeout=1)
    form.set_value("city", "Somewhere")
    await form.settle(timeout=1)

    assert calls == ["0150"]
    assert form.get_value("city") == "Somewhere"
    await form.aclose()


@pytest.mark.asyncio
async def test_async_derivation_waits_for_its_condition() -> None:
    calls = []

    async def city_for_zip(ctx) -> str | None:
        calls.append(ctx.root["zip"])
        return CITIES.get(ctx.root["zip"])

    form = async_city_form(
        city_for_zip,
        condition={"type": "fieldValue", "fieldPath": "country", "operator": "equals", "value": "NO"},
    )
    await form.settle(timeout=1)
    form.set_value("country", "SE")
    form.set_value("zip", "5003")
    await form.settle(timeout=1)

    assert calls == ["0150"]
    assert form.get_value("city") == "Oslo"
    await form.aclose()


def zip_lookup_client(calls: list[str], status_code: int = 200) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        zip_code = request.url.params.get("zip")
        calls.append(zip_code)
        if status_code != 200:
            return httpx.Response(status_code, json={"error": "unavailable"})
        return httpx.Response(200, json={"city": CITIES.get(zip_code)})

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def http_city_form(client: httpx.AsyncClient, **http) -> DynamicForm:
    return city_form(
        {
            "http": {
                "url": "https://api.test/zip",
                "queryParams": {"zip": "formValue.zip"},
                "debounceMs": 0,
                **http,
            },
            "responseExpression": "response.city",
        },
        http_client=client,
    )


@pytest.mark.asyncio
async def test_http_derivation_writes_the_response_value() -> None:
    calls: list[str] = []
    client = zip_lookup_client(calls)
    form = http_city_form(client)

    await form.settle(timeout=1)
    assert form.get_value("city") == "Oslo"

    form.set_value("zip", "5003")
    await form.settle(timeout=1)
    assert form.get_value("city") == "Bergen"

    form.set_value("zip", "0150")
    # cached response is applied straight away
    assert form.get_value("city") == "Oslo"
    assert calls == ["0150", "5003"]
    await form.aclose()
    await client.aclose()


@pytest.mark.asyncio
async def test_http_derivation_switches_to_the_latest_request() -> None:
    calls: list[str] = []
    client = zip_lookup_client(calls)
    form = http_city_form(client, debounceMs=50)

    for zip_code in ("5", "50", "5003"):
        form.set_value("zip", zip_code)
        await asyncio.sleep(0)
    await form.settle(timeout=1)

    assert calls == ["5003"]
    assert form.get_value("city") == "Bergen"
    await form.aclose()
    await client.aclose()


@pytest.mark.asyncio
async def test_failed_http_derivation_keeps_the_current_value(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="dynamic_forms")
    calls: list[str] = []
    client = zip_lookup_client(calls, status_code=502)
    form = http_city_form(client)

    await form.settle(timeout=1)

    assert calls == ["0150"]
    assert form.get_value("city") == "Unknown"
    assert "derivation_failed" in [record.getMessage() for record in caplog.records]
    await form.aclose()
    await client.aclose()


def test_deferred_derivations_are_checked_at_compile_time() -> None:
    config = {
        "fields": [
            {"key": "zip", "type": "input"},
            {"key": "city", "type": "input", "logic": [{"type": "derivation", "asyncFunctionName": "cityForZip"}]},
            {
                "key": "region",
                "type": "input",
                "logic": [{"type": "derivation", "http": {"url": "https://api.test/region"}}],
            },
        ]
    }

    issues = validate_form_config(config)
    assert [(issue.kind, issue.path) for issue in issues] == [
        ("unregistered_function", "city.logic[0]"),
        ("invalid_logic", "region.logic[0]"),
    ]

    registered = {"asyncDerivations": {"cityForZip": lambda ctx: None}}
    assert [issue.kind for issue in validate_form_config(config, registered)] == ["invalid_logic"]


def test_without_path_drops_only_the_target_leaf() -> None:
    value = {"zip": "0150", "lines": [{"total": 3, "qty": 1}]}

    assert without_path(value, ["zip"]) == {"lines": [{"total": 3, "qty": 1}]}
    assert without_path(value, ["lines", "0", "total"]) == {"zip": "0150", "lines": [{"qty": 1}]}
    assert without_path(value, ["missing"]) is value
    assert value["lines"][0] == {"total": 3, "qty": 1}
