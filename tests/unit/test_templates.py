"""Tests for the built-in workflow templates and their step handlers."""
import pytest

from farmflow.error_coordination.errors import ValidationError
from farmflow.orchestration.handlers import HandlerRegistry
from farmflow.orchestration.templates import (
    TEMPLATES,
    PriceLookupWorkflow,
    VoicePriceQueryWorkflow,
    builtin_definitions,
    compose_diagnosis_advice,
    compose_price_response,
    extract_price_query,
    get_workflow_template,
    parse_price_query,
    register_builtin_handlers,
)
from farmflow.orchestration.workflow_engine.steps import StepInput


def step_input(context, data=None, dependencies=None, step_id="step"):
    return StepInput(step_id=step_id, data=data or {}, context=context, dependencies=dependencies or {})


class TestPriceParsing:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("What is the price of tomato in Nashik?", {"crop": "tomato", "market": "nashik"}),
            ("onion rate at Lasalgaon today", {"crop": "onion", "market": "lasalgaon"}),
            ("price of jowar", {"crop": "jowar", "market": None}),
            ("hello", {"crop": None, "market": None}),
        ],
    )
    def test_extract_price_query(self, text, expected):
        assert extract_price_query(text) == expected

    def test_explicit_fields_win(self, context):
        result = parse_price_query(
            step_input(context, {"text": "price of tomato in nashik", "crop": "Onion", "market": "Pune"})
        )
        assert result == {"crop": "onion", "market": "pune", "date": None}

    def test_market_defaults_to_nearest(self, context):
        assert parse_price_query(step_input(context, {"text": "wheat price"}))["market"] == "nearest"

    def test_missing_crop_is_validation_error(self, context):
        with pytest.raises(ValidationError):
            parse_price_query(step_input(context, {"text": "what is the price"}))


class TestComposeHandlers:
    def test_price_response_with_quote(self, context):
        result = compose_price_response(
            step_input(
                context,
                dependencies={
                    "parse_query": {"crop": "tomato", "market": "nashik"},
                    "fetch_price": {"price": 2400, "unit": "quintal", "as_of": "2024-11-01"},
                },
            )
        )

        assert result["text"] == "Tomato at Nashik: Rs 2400 per quintal (as of 2024-11-01)"
        assert result["locale"] == "hi-IN"

    def test_price_response_without_quote(self, context):
        result = compose_price_response(
            step_input(context, dependencies={"parse_query": {"crop": "tomato", "market": "nashik"}, "fetch_price": None})
        )

        assert result["text"] == "Prices for Tomato at Nashik are not available right now."
        assert result["quote"] is None

    def test_diagnosis_advice_uses_forecast(self, context):
        result = compose_diagnosis_advice(
            step_input(
                context,
                dependencies={
                    "diagnose": {"condition": "early blight", "confidence": 0.91, "treatments": ["Spray copper"]},
                    "fetch_weather": {"rain_expected": True},
                },
            )
        )

        assert result["condition"] == "early blight"
        assert result["advice"][0] == "Spray copper"
        assert "Rain is expected" in result["advice"][1]

    def test_diagnosis_advice_without_forecast(self, context):
        result = compose_diagnosis_advice(step_input(context, dependencies={"diagnose": {"treatments": []}}))
        assert result["advice"] == []
        assert result["condition"] == "unknown"


class TestTemplates:
    def test_builtin_definitions_reference_registered_handlers(self):
        handlers = register_builtin_handlers(HandlerRegistry())

        for definition in builtin_definitions():
            names = [step.handler for step in definition.steps if step.handler]
            assert handlers.missing(names) == [], definition.name
            for step in definition.entry_steps():
                if step.input_schema:
                    handlers.schema(step.input_schema)

    def test_template_names_match_definitions(self):
        assert {d.name for d in builtin_definitions()} == set(TEMPLATES)

    def test_price_lookup_fallbacks(self):
        cached = PriceLookupWorkflow.create()
        strict = PriceLookupWorkflow.create(substitute_cached=False)

        assert cached.step("fetch_price").fallback.action.value == "substitute"
        assert strict.step("fetch_price").fallback.action.value == "abort"
        assert strict.step("fetch_price").fallback.message

    def test_voice_answer_survives_missing_speech(self):
        definition = VoicePriceQueryWorkflow.create()

        assert definition.step("synthesize").optional
        assert [s.id for s in definition.sink_steps()] == ["deliver"]
        assert definition.step("deliver").dependencies[1].required is False

    def test_get_workflow_template(self):
        definition = get_workflow_template("price-lookup", market_provider="agmarknet")

        assert definition.step("fetch_price").dependency == "agmarknet"
        assert get_workflow_template("unknown") is None
