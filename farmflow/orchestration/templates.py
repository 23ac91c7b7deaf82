"""Pre-defined workflow templates for common farmer requests."""
from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..error_coordination.errors import ValidationError
from .definitions import load_definitions, parse_definition
from .handlers import HandlerRegistry
from .workflow_engine.steps import StepInput, WorkflowDefinition

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

DEFAULT_UNAVAILABLE_MESSAGE = (
    "We could not get an answer right now. Your request has been saved and will be retried."
)

KNOWN_CROPS = {
    "tomato", "onion", "potato", "wheat", "rice", "paddy", "cotton", "soybean",
    "maize", "chilli", "groundnut", "sugarcane", "banana", "mustard", "gram",
}


# Input schemas


class PriceQueryInput(BaseModel):
    """Typed or transcribed market price question, with optional explicit fields."""

    text: str = Field("", max_length=500)
    crop: Optional[str] = None
    market: Optional[str] = None
    date: Optional[str] = None


class VoiceQueryInput(BaseModel):
    audio_b64: str = Field(..., min_length=1)
    mime_type: str = "audio/ogg"


class CropPhotoInput(BaseModel):
    photo_id: str = Field(..., min_length=1)
    image_b64: str = Field(..., min_length=1)
    crop: Optional[str] = None
    location: Optional[str] = None


class SoilSampleInput(BaseModel):
    sample_id: str = Field(..., min_length=1)
    field_id: str = Field(..., min_length=1)
    readings: Dict[str, float]


# Step handlers


def extract_price_query(text: str) -> Dict[str, Optional[str]]:
    """Pull crop and market out of a free-text question.

    "What is the price of tomato in Nashik?" -> {"crop": "tomato", "market": "nashik"}
    """
    words = re.findall(r"[a-z]+", text.lower())
    crop = next((w for w in words if w in KNOWN_CROPS), None)
    if crop is None and "of" in words[:-1]:
        crop = words[words.index("of") + 1]

    market = None
    for marker in ("in", "at"):
        if marker in words[:-1]:
            market = words[words.index(marker) + 1]
            break
    return {"crop": crop, "market": market}


def parse_price_query(step_input: StepInput) -> Dict[str, Any]:
    data = step_input.data
    parsed = extract_price_query(data.get("text", ""))
    crop = data.get("crop") or parsed["crop"]
    if not crop:
        raise ValidationError("Could not find a crop name in the question")
    return {
        "crop": crop.lower(),
        "market": (data.get("market") or parsed["market"] or "nearest").lower(),
        "date": data.get("date"),
    }


def parse_transcribed_query(step_input: StepInput) -> Dict[str, Any]:
    transcript = step_input.dependencies["transcribe"]
    parsed = extract_price_query(transcript.get("text", ""))
    if not parsed["crop"]:
        raise ValidationError("Could not find a crop name in the voice note")
    return {"crop": parsed["crop"], "market": parsed["market"] or "nearest", "date": None}


def build_price_request(step_input: StepInput) -> Dict[str, Any]:
    query = step_input.dependencies["parse_query"]
    return {"crop": query["crop"], "market": query["market"], "date": query.get("date")}


def compose_price_response(step_input: StepInput) -> Dict[str, Any]:
    query = step_input.dependencies["parse_query"]
    quote = step_input.dependencies.get("fetch_price")
    crop, market = query["crop"].title(), query["market"].title()

    if not quote:
        text = f"Prices for {crop} at {market} are not available right now."
    else:
        unit = quote.get("unit", "quintal")
        text = f"{crop} at {market}: Rs {quote['price']} per {unit}"
        if quote.get("as_of"):
            text += f" (as of {quote['as_of']})"
    return {"text": text, "locale": step_input.context.locale, "quote": quote}


def build_transcription_request(step_input: StepInput) -> Dict[str, Any]:
    return {
        "audio": step_input.data["audio_b64"],
        "mime_type": step_input.data.get("mime_type", "audio/ogg"),
        "language": step_input.context.locale,
    }


def build_speech_request(step_input: StepInput) -> Dict[str, Any]:
    response = step_input.dependencies["compose_response"]
    return {"text": response["text"], "voice_locale": step_input.context.locale}


def assemble_voice_answer(step_input: StepInput) -> Dict[str, Any]:
    answer = dict(step_input.dependencies["compose_response"])
    speech = step_input.dependencies.get("synthesize")
    answer["audio"] = speech.get("audio") if speech else None
    return answer


def build_photo_upload(step_input: StepInput) -> Dict[str, Any]:
    owner = step_input.context.farmer_id or step_input.context.client_id
    return {
        "key": f"photos/{owner}/{step_input.data['photo_id']}",
        "data": step_input.data["image_b64"],
        "content_type": "image/jpeg",
    }


def build_diagnosis_request(step_input: StepInput) -> Dict[str, Any]:
    return {
        "photo_key": step_input.dependencies["upload_photo"]["key"],
        "crop": step_input.data.get("crop"),
    }


def build_weather_request(step_input: StepInput) -> Dict[str, Any]:
    return {"location": step_input.data.get("location"), "days": 3}


def compose_diagnosis_advice(step_input: StepInput) -> Dict[str, Any]:
    diagnosis = step_input.dependencies["diagnose"]
    forecast = step_input.dependencies.get("fetch_weather") or {}
    advice = list(diagnosis.get("treatments", []))
    if forecast.get("rain_expected"):
        advice.append("Rain is expected; delay spraying until after it passes.")
    return {
        "condition": diagnosis.get("condition", "unknown"),
        "confidence": diagnosis.get("confidence"),
        "advice": advice,
        "locale": step_input.context.locale,
    }


def build_sample_record(step_input: StepInput) -> Dict[str, Any]:
    return {
        "table": "soil_samples",
        "entity_id": step_input.data["sample_id"],
        "record": {"field_id": step_input.data["field_id"], "readings": dict(step_input.data["readings"])},
    }


def build_soil_analysis_request(step_input: StepInput) -> Dict[str, Any]:
    return {"field_id": step_input.data["field_id"], "readings": dict(step_input.data["readings"])}


def compose_soil_report(step_input: StepInput) -> Dict[str, Any]:
    analysis = step_input.dependencies["analyze"]
    return {
        "field_id": step_input.data["field_id"],
        "sample_id": step_input.data["sample_id"],
        "deficiencies": analysis.get("deficiencies", []),
        "recommendations": analysis.get("recommendations", []),
        "locale": step_input.context.locale,
    }


def register_builtin_handlers(handlers: HandlerRegistry) -> HandlerRegistry:
    """Register the handlers and input schemas the built-in templates reference."""
    for name, func in {
        "parse_price_query": parse_price_query,
        "parse_transcribed_query": parse_transcribed_query,
        "build_price_request": build_price_request,
        "compose_price_response": compose_price_response,
        "build_transcription_request": build_transcription_request,
        "build_speech_request": build_speech_request,
        "assemble_voice_answer": assemble_voice_answer,
        "build_photo_upload": build_photo_upload,
        "build_diagnosis_request": build_diagnosis_request,
        "build_weather_request": build_weather_request,
        "compose_diagnosis_advice": compose_diagnosis_advice,
        "build_sample_record": build_sample_record,
        "build_soil_analysis_request": build_soil_analysis_request,
        "compose_soil_report": compose_soil_report,
    }.items():
        handlers.register(name, func)

    handlers.register_schema("price_query", PriceQueryInput)
    handlers.register_schema("voice_query", VoiceQueryInput)
    handlers.register_schema("crop_photo", CropPhotoInput)
    handlers.register_schema("soil_sample", SoilSampleInput)
    return handlers


# Templates


def _price_steps(market_provider: str, substitute_cached: bool, parse_step: Dict[str, Any]) -> List[Dict[str, Any]]:
    fetch_price: Dict[str, Any] = {
        "id": "fetch_price",
        "name": "Fetch Market Price",
        "dependency": market_provider,
        "operation": "get_price",
        "handler": "build_price_request",
        "dependencies": ["parse_query"],
        "timeout": 10,
    }
    if substitute_cached:
        fetch_price["fallback"] = {"action": "substitute", "use_cached": True, "default_output": None}
    else:
        fetch_price["fallback"] = {
            "action": "abort",
            "message": "Market prices are unavailable right now. Please try again later.",
        }

    return [
        parse_step,
        fetch_price,
        {
            "id": "compose_response",
            "name": "Compose Response",
            "handler": "compose_price_response",
            "dependencies": ["parse_query", "fetch_price"],
        },
    ]


class PriceLookupWorkflow:
    """Text question about a crop price, answered from a market price provider."""

    @staticmethod
    def create(
        market_provider: str = "market-prices",
        substitute_cached: bool = True,
        timeout: float = 30.0,
    ) -> WorkflowDefinition:
        """Create price lookup workflow.

        Args:
            market_provider: Dependency serving market prices
            substitute_cached: Answer with the last known price when the provider fails
            timeout: Workflow time budget in seconds

        Returns:
            Workflow definition
        """
        parse_step = {
            "id": "parse_query",
            "name": "Parse Price Question",
            "handler": "parse_price_query",
            "input_schema": "price_query",
        }
        return parse_definition(
            {
                "name": "price-lookup",
                "version": 1,
                "description": "Answer a crop price question from market data",
                "steps": _price_steps(market_provider, substitute_cached, parse_step),
                "timeout": timeout,
                "fallback_message": DEFAULT_UNAVAILABLE_MESSAGE,
            }
        )


class VoicePriceQueryWorkflow:
    """Voice note about a crop price, answered with synthesized speech."""

    @staticmethod
    def create(
        speech_provider: str = "speech-to-text",
        market_provider: str = "market-prices",
        voice_provider: str = "text-to-speech",
        timeout: float = 60.0,
    ) -> WorkflowDefinition:
        """Create voice price query workflow.

        The spoken answer is optional: when synthesis fails the text answer is
        still returned.
        """
        steps = [
            {
                "id": "transcribe",
                "name": "Transcribe Voice Note",
                "dependency": speech_provider,
                "operation": "transcribe",
                "handler": "build_transcription_request",
                "input_schema": "voice_query",
                "timeout": 20,
            }
        ]
        steps.extend(
            _price_steps(
                market_provider,
                True,
                {
                    "id": "parse_query",
                    "name": "Parse Transcribed Question",
                    "handler": "parse_transcribed_query",
                    "dependencies": ["transcribe"],
                },
            )
        )
        steps.append(
            {
                "id": "synthesize",
                "name": "Synthesize Spoken Answer",
                "dependency": voice_provider,
                "operation": "synthesize",
                "handler": "build_speech_request",
                "dependencies": ["compose_response"],
                "optional": True,
                "fallback": {"action": "skip"},
                "timeout": 15,
            }
        )
        steps.append(
            {
                "id": "deliver",
                "name": "Assemble Answer",
                "handler": "assemble_voice_answer",
                "dependencies": ["compose_response", {"step_id": "synthesize", "required": False}],
            }
        )
        return parse_definition(
            {
                "name": "voice-price-query",
                "version": 1,
                "description": "Answer a spoken crop price question",
                "steps": steps,
                "timeout": timeout,
                "fallback_message": DEFAULT_UNAVAILABLE_MESSAGE,
            }
        )


class CropDiagnosisWorkflow:
    """Crop photo diagnosis with weather-aware treatment advice."""

    @staticmethod
    def create(
        diagnosis_provider: str = "crop-diagnosis",
        weather_provider: str = "weather",
        store_provider: str = "stores",
        timeout: float = 120.0,
    ) -> WorkflowDefinition:
        """Create crop diagnosis workflow.

        The photo upload is not idempotent and is keyed by ``photo_id``, so an
        offline replay of the same photo never stores it twice. The forecast is
        fetched in parallel with the diagnosis and may be missing.
        """
        steps = [
            {
                "id": "upload_photo",
                "name": "Store Crop Photo",
                "dependency": store_provider,
                "operation": "blob.put",
                "handler": "build_photo_upload",
                "input_schema": "crop_photo",
                "idempotent": False,
                "idempotency_key": ["input.photo_id"],
            },
            {
                "id": "diagnose",
                "name": "Diagnose Crop Condition",
                "dependency": diagnosis_provider,
                "operation": "diagnose",
                "handler": "build_diagnosis_request",
                "dependencies": ["upload_photo"],
                "timeout": 60,
                "fallback": {
                    "action": "abort",
                    "message": "Photo diagnosis is unavailable right now. A field officer will follow up.",
                },
            },
            {
                "id": "fetch_weather",
                "name": "Fetch Weather Forecast",
                "dependency": weather_provider,
                "operation": "forecast",
                "handler": "build_weather_request",
                "optional": True,
                "fallback": {"action": "substitute", "default_output": {}, "use_cached": True},
            },
            {
                "id": "advise",
                "name": "Compose Treatment Advice",
                "handler": "compose_diagnosis_advice",
                "dependencies": ["diagnose", {"step_id": "fetch_weather", "required": False}],
            },
        ]
        return parse_definition(
            {
                "name": "crop-diagnosis",
                "version": 1,
                "description": "Diagnose a crop problem from a photo",
                "steps": steps,
                "timeout": timeout,
                "max_parallel": 4,
            }
        )


class SoilReportWorkflow:
    """Soil test readings turned into fertilizer recommendations."""

    @staticmethod
    def create(
        soil_provider: str = "soil-analysis",
        store_provider: str = "stores",
        timeout: float = 60.0,
    ) -> WorkflowDefinition:
        steps = [
            {
                "id": "record_sample",
                "name": "Record Soil Sample",
                "dependency": store_provider,
                "operation": "records.upsert",
                "handler": "build_sample_record",
                "input_schema": "soil_sample",
                "idempotent": False,
                "idempotency_key": ["input.sample_id"],
            },
            {
                "id": "analyze",
                "name": "Analyze Soil Readings",
                "dependency": soil_provider,
                "operation": "analyze",
                "handler": "build_soil_analysis_request",
                "dependencies": ["record_sample"],
            },
            {
                "id": "report",
                "name": "Compose Soil Report",
                "handler": "compose_soil_report",
                "dependencies": ["analyze"],
            },
        ]
        return parse_definition(
            {
                "name": "soil-report",
                "version": 1,
                "description": "Recommend fertilizer from soil test readings",
                "steps": steps,
                "timeout": timeout,
                "fallback_message": DEFAULT_UNAVAILABLE_MESSAGE,
            }
        )


TEMPLATES = {
    "price-lookup": PriceLookupWorkflow,
    "voice-price-query": VoicePriceQueryWorkflow,
    "crop-diagnosis": CropDiagnosisWorkflow,
    "soil-report": SoilReportWorkflow,
}


def get_workflow_template(template_name: str, **kwargs) -> Optional[WorkflowDefinition]:
    """Get pre-defined workflow template.

    Args:
        template_name: Name of template
        **kwargs: Template-specific parameters

    Returns:
        Workflow definition or None
    """
    template_class = TEMPLATES.get(template_name.lower())
    if template_class:
        return template_class.create(**kwargs)

    logger.warning(f"Unknown workflow template: {template_name}")
    return None


def builtin_definitions() -> List[WorkflowDefinition]:
    """All templates with their default parameters."""
    return [template_class.create() for template_class in TEMPLATES.values()]


def configured_definitions(config: "Config") -> List[WorkflowDefinition]:
    """Built-in templates plus any definitions in ``FARMFLOW_DEFINITIONS``."""
    definitions = builtin_definitions()
    if config.definitions_path is not None:
        definitions.extend(load_definitions(config.definitions_path))
    return definitions
