"""Model families and their registry.

Every generation engine the frontend can select is a *model family*: a
Replicate model version plus the rules for turning a
:class:`~imagerelay.core.requests.GenerationRequest` into that model's input
payload. Each family owns its own validation, so adding an engine means
adding one class here rather than another branch in the orchestrator.

Families
--------
- **standard**: Flux 1.1 Pro, text-only with an optional reference image.
- **edge**: Flux Canny Pro, requires a control image.
- **depth**: Flux Depth Pro, requires a control image.
- **character**: Flux PuLID, requires a face image plus sampling parameters.
- **illustration**: fine-tuned illustration LoRA, submitted asynchronously
  and completed by webhook or status polling.

Reference images
----------------
Families receive a :class:`ReferenceResolver` that turns an image reference
from the request into something the remote API can fetch. References pointing
at this relay's own ``/uploads`` are resolved from disk; ``data:`` URIs and
remote URLs pass through unchanged.

Usage Example
-------------
    >>> from imagerelay.core.model_families import family_registry
    >>> family = family_registry.get("character")
    >>> payload = await family.build_input(request, cleaned_prompt, resolver)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from .encoder import EmbeddedImage, encode_data_uri
from .errors import InputValidationError
from .prompts import get_valid_aspect_ratio
from .publisher import ImagePublisher
from .requests import GenerationRequest
from .uploads import UploadStore

logger = logging.getLogger(__name__)

DEFAULT_NEGATIVE_PROMPT = "bad quality, worst quality, text, signature, watermark, extra limbs"
ILLUSTRATION_NEGATIVE_PROMPT = "bad quality, worst quality, signature, text"


class ReferenceResolver:
    """Resolve image references for model inputs.

    Args:
        uploads: Upload store used to map local URLs to files.
        publisher: Publisher used when a family prefers hosted URLs.
    """

    def __init__(self, uploads: UploadStore, publisher: ImagePublisher) -> None:
        self.uploads = uploads
        self.publisher = publisher

    def is_local(self, reference: str) -> bool:
        return self.uploads.is_local_reference(reference)

    def _existing_local_path(self, reference: str, missing_message: str):
        path = self.uploads.resolve_local_reference(reference)
        if path is not None and not path.is_file():
            logger.error(f"Referenced upload does not exist: {path}")
            raise InputValidationError(missing_message)
        return path

    async def as_data_uri(self, reference: str, missing_message: str) -> str:
        """Embed a local reference as a data URI; pass anything else through."""
        path = self._existing_local_path(reference, missing_message)
        if path is None:
            return reference
        try:
            return await encode_data_uri(path)
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise InputValidationError("Failed to process image file") from e

    async def as_published(self, reference: str, missing_message: str) -> str:
        """Publish a local reference to an image host; pass anything else through.

        Falls back to the embedded data URI when no host is reachable.
        """
        path = self._existing_local_path(reference, missing_message)
        if path is None:
            return reference
        try:
            published = await self.publisher.publish(path)
        except OSError as e:
            logger.error(f"Failed to read {path}: {e}")
            raise InputValidationError("Failed to process image file") from e
        if isinstance(published, EmbeddedImage):
            logger.info(f"Using embedded image data for {path.name}: {published.preview()}")
            return published.data
        return published


class ModelFamilyBase(ABC):
    """Abstract base class for model families.

    Attributes
    ----------
    name : str
        Engine key used by the frontend (``engineType``).
    display_name : str
        Human-readable model name.
    description : str
        Short description of the family's purpose.
    model : str | None
        Replicate model slug, informational only.
    version : str
        Replicate model version hash used for submission.
    asynchronous : bool
        True when requests return immediately and complete via webhook or
        status polling instead of blocking until the prediction finishes.
    """

    name: str = "base"
    display_name: str = "Base Model Family"
    description: str = "Base class for model families"
    model: str | None = None
    version: str = ""
    asynchronous: bool = False

    @abstractmethod
    async def build_input(
        self,
        request: GenerationRequest,
        prompt: str,
        resolver: ReferenceResolver,
    ) -> dict[str, Any]:
        """Validate *request* and return the model input payload.

        Args:
            request: Validated request body.
            prompt: Already sanitised prompt.
            resolver: Reference image resolver.

        Raises
        ------
        InputValidationError
            If a required field is missing or a referenced upload is gone.
        """

    def summarize_settings(self, payload: dict[str, Any]) -> dict[str, Any]:
        """Return the ``steps`` / ``guidance`` summary reported in response metadata."""
        steps = payload.get("num_inference_steps") or payload.get("steps") or 30
        guidance = payload.get("guidance_scale") or payload.get("guidance") or 7.5
        return {"steps": steps, "guidance": guidance}

    def get_info(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "model": self.model,
            "version": self.version,
            "asynchronous": self.asynchronous,
        }


def _apply_aspect_ratio(payload: dict[str, Any], request: GenerationRequest) -> None:
    if request.settings.aspect_ratio:
        payload["aspect_ratio"] = get_valid_aspect_ratio(request.settings.aspect_ratio)


class StandardFamily(ModelFamilyBase):
    name = "standard"
    display_name = "Flux 1.1 Pro"
    description = "Standard image generation with high quality results"
    model = "black-forest-labs/flux-1.1-pro"
    version = "b744535cf2bf3c4cf2130d0cc75cd4795b280215f8275b041015fb4f9917cbcd"

    async def build_input(self, request, prompt, resolver):
        settings = request.settings
        payload: dict[str, Any] = {
            "prompt": prompt,
            "prompt_upsampling": True,
            "safety_tolerance": 2,
            "output_format": "png",
            "output_quality": 80,
        }

        # Composition mode: the composition image doubles as the image prompt.
        if settings.composition_image:
            payload["image"] = await resolver.as_data_uri(
                settings.image or settings.composition_image, "Composition image file not found"
            )

        _apply_aspect_ratio(payload, request)
        if settings.steps:
            payload["num_inference_steps"] = settings.steps
        if settings.guidance:
            payload["guidance_scale"] = settings.guidance

        reference = settings.reference_image
        if reference:
            if resolver.is_local(reference):
                payload["image_base64"] = await resolver.as_data_uri(
                    reference, "Reference image file not found"
                )
            elif reference.startswith("data:"):
                payload["image_base64"] = reference
            else:
                payload["image"] = reference

        return payload


class ControlFamilyBase(ModelFamilyBase):
    """Shared behaviour of the control-image (ControlNet-style) families."""

    async def build_input(self, request, prompt, resolver):
        settings = request.settings
        control = settings.control_image or settings.composition_image
        if not control:
            raise InputValidationError("Composition image is required")

        control = await resolver.as_published(control, "Composition image file not found")

        payload: dict[str, Any] = {
            "prompt": prompt,
            "output_format": "png",
            "output_quality": 80,
            "safety_tolerance": 2,
            "prompt_upsampling": True,
            "control_image": control,
        }
        _apply_aspect_ratio(payload, request)
        if settings.steps:
            payload["steps"] = settings.steps
        if settings.guidance:
            payload["guidance"] = settings.guidance
        return payload


class EdgeFamily(ControlFamilyBase):
    name = "edge"
    display_name = "Flux Canny Pro"
    description = "Edge-based image generation for detailed control"
    model = "black-forest-labs/flux-canny-pro"
    version = "eb672df541b42b50cb3b397d202de02a52210e6363fb1d8bc9e57fab089cee9d"


class DepthFamily(ControlFamilyBase):
    name = "depth"
    display_name = "Flux Depth Pro"
    description = "Depth-aware image generation for 3D-like results"
    model = "black-forest-labs/flux-depth-pro"
    version = "9964ef120f01973d86cb9121d5b6ec94a9f1b8e386ec86d4353ae5f7bc83ae24"


class CharacterFamily(ModelFamilyBase):
    name = "character"
    display_name = "Flux Pulid"
    description = "Character-focused image generation"
    version = "8baa7ef2255075b46f4d91cd238c21d31181b3e6a864463f967960bb0112525b"

    DEFAULT_START_STEP = 4
    DEFAULT_NUM_OUTPUTS = 4
    DEFAULT_INFERENCE_STEPS = 30
    DEFAULT_GUIDANCE_SCALE = 7.5

    async def build_input(self, request, prompt, resolver):
        settings = request.settings
        face = request.main_face_image or settings.character_image
        if not face:
            raise InputValidationError("Character image is required")

        face = await resolver.as_data_uri(face, "Character image file not found")

        # Zero or empty values fall back to the defaults, like missing ones.
        return {
            "prompt": prompt,
            "main_face_image": face,
            "start_step": settings.start_step or self.DEFAULT_START_STEP,
            "num_outputs": settings.num_outputs or self.DEFAULT_NUM_OUTPUTS,
            "negative_prompt": settings.negative_prompt or DEFAULT_NEGATIVE_PROMPT,
            "aspect_ratio": settings.aspect_ratio or "1:1",
            "num_inference_steps": settings.num_inference_steps or self.DEFAULT_INFERENCE_STEPS,
            "guidance_scale": settings.guidance_scale or self.DEFAULT_GUIDANCE_SCALE,
        }


class IllustrationFamily(ModelFamilyBase):
    name = "illustration"
    display_name = "Škoda Illustration"
    description = "Brand illustration style, completed asynchronously"
    version = "f6e6805f4d32f8522f9af09f3efdbeeafc199621f9b15e3ade4ac9cef01c2af8"
    asynchronous = True

    async def build_input(self, request, prompt, resolver):
        settings = request.settings
        payload: dict[str, Any] = {
            "prompt": prompt,
            "start_step": 4,
            "num_outputs": 1,
            "negative_prompt": settings.negative_prompt or ILLUSTRATION_NEGATIVE_PROMPT,
            "aspect_ratio": settings.aspect_ratio or "1:1",
            "prompt_guidance": settings.guidance_scale or 7.5,
            "skoda_strength": 1,
            "character_name": "",
            "extra_lora_scale": settings.extra_lora_scale or 0.5,
            "lora_scale": settings.lora_scale or 1.0,
            "output_quality": settings.output_quality or 80,
        }

        image = settings.image
        if image:
            if image.startswith("data:image/"):
                payload["image"] = image
            elif resolver.is_local(image):
                payload["image"] = await resolver.as_data_uri(image, "Image file not found")
            else:
                # Bare base64 payloads are assumed to be JPEG.
                payload["image"] = f"data:image/jpeg;base64,{image}"

        return payload


class FamilyRegistry:
    """Registry of available model families keyed by engine name."""

    def __init__(self) -> None:
        self._families: dict[str, ModelFamilyBase] = {}

    def register(self, family_class: type[ModelFamilyBase]) -> None:
        name = family_class.name
        if name in self._families:
            logger.warning(f"Model family '{name}' is already registered, overwriting")
        self._families[name] = family_class()
        logger.debug(f"Registered model family: {name}")

    def get(self, name: str | None) -> ModelFamilyBase | None:
        if not name:
            return None
        return self._families.get(name)

    def list_available(self) -> list[str]:
        return list(self._families.keys())

    def list_info(self, include_async: bool = True) -> list[dict[str, Any]]:
        return [
            family.get_info()
            for family in self._families.values()
            if include_async or not family.asynchronous
        ]


# Global family registry instance
family_registry = FamilyRegistry()
for _family in (StandardFamily, EdgeFamily, DepthFamily, CharacterFamily, IllustrationFamily):
    family_registry.register(_family)
