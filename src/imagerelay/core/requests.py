"""Generation request models.

The frontend mixes camelCase (``engineType``, ``compositionImage``) and
snake_case (``main_face_image``, ``num_outputs``) keys, so fields accept
either spelling through :class:`~pydantic.AliasChoices`.
"""

from __future__ import annotations

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


def _either(snake: str, camel: str) -> AliasChoices:
    return AliasChoices(camel, snake)


class _SettingsHolder(BaseModel):
    """Treats an explicit ``"settings": null`` like an omitted object."""

    @field_validator("settings", mode="before", check_fields=False)
    @classmethod
    def _null_settings(cls, value):
        return {} if value is None else value


class GenerationSettings(BaseModel):
    """Optional per-request generation settings.

    Which fields are read depends on the model family; unknown keys are
    accepted and ignored.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    composition_image: str | None = Field(
        default=None, validation_alias=_either("composition_image", "compositionImage")
    )
    control_image: str | None = Field(
        default=None, validation_alias=_either("control_image", "controlImage")
    )
    image: str | None = None
    reference_image: str | None = Field(
        default=None, validation_alias=_either("reference_image", "referenceImage")
    )
    character_image: str | None = Field(
        default=None, validation_alias=_either("character_image", "characterImage")
    )
    aspect_ratio: str | None = Field(
        default=None, validation_alias=_either("aspect_ratio", "aspectRatio")
    )

    # Flux-style sampling
    steps: int | None = None
    guidance: float | None = None

    # Character / illustration sampling
    start_step: int | None = None
    num_outputs: int | None = None
    negative_prompt: str | None = None
    num_inference_steps: int | None = None
    guidance_scale: float | None = None
    extra_lora_scale: float | None = None
    lora_scale: float | None = None
    output_quality: int | None = None


class GenerationRequest(_SettingsHolder):
    """Body of ``POST /api/generate-image``.

    ``prompt`` and ``engine_type`` are optional at the schema level so that a
    missing value is reported as a 400 input error rather than a schema error.
    """

    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = None
    engine_type: str | None = Field(
        default=None, validation_alias=_either("engine_type", "engineType")
    )
    model: str | None = None
    main_face_image: str | None = Field(
        default=None, validation_alias=_either("main_face_image", "mainFaceImage")
    )
    settings: GenerationSettings = Field(default_factory=GenerationSettings)


class IllustrationRequest(_SettingsHolder):
    """Body of ``POST /api/generate-illustration``."""

    prompt: str | None = None
    settings: GenerationSettings = Field(default_factory=GenerationSettings)
