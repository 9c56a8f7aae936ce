"""CLI command for enqueueing generation requests.

Usage:
    python -m storyforge.cli enqueue KIND [OPTIONS]

Examples:
    # Text-to-image for a scene
    python -m storyforge.cli enqueue image --scene-id scene-001 \\
        --prompt "A hero standing on a cliff at golden hour"

    # Edit an existing image
    python -m storyforge.cli enqueue image-edit --scene-id scene-001 \\
        --prompt "Make it night" --reference https://example.com/scene-001.png

    # Image-to-video, 8 seconds, portrait
    python -m storyforge.cli enqueue video --scene-id scene-001 --prompt "Slow push in" \\
        --reference https://example.com/scene-001.png --duration 8 --aspect-ratio 9:16

    # Several images from a JSON file: [{"sceneId": ..., "prompt": ...}, ...]
    python -m storyforge.cli enqueue batch-images scenes.json --storyboard-id test-batch-001
"""

import json
import sys
from argparse import ArgumentParser, Namespace
from pathlib import Path

import structlog
from pydantic import ValidationError

from storyforge.core.config import Settings
from storyforge.models.job import Capability, GenerationMode
from storyforge.pipeline import open_pipeline
from storyforge.schemas.payload import GenerationPayload, derive_idempotency_key
from storyforge.services.exceptions import QueueUnavailable

logger = structlog.get_logger()


def add_arguments(parser: ArgumentParser) -> None:
    """Register the enqueue sub-commands."""
    kinds = parser.add_subparsers(dest="kind", required=True)

    def common(sub: ArgumentParser, with_prompt: bool = True) -> None:
        if with_prompt:
            sub.add_argument("--prompt", required=True, help="Generation prompt")
            sub.add_argument("--scene-id", help="Target scene")
            sub.add_argument("--character-id", help="Target character")
            sub.add_argument("--key", help="Idempotency key (default: derived from the request)")
            sub.add_argument("--model", help="Model to try first (must be in the chain)")
        sub.add_argument("--storyboard-id", help="Owning storyboard")

    common(kinds.add_parser("image", help="Text-to-image"))

    edit = kinds.add_parser("image-edit", help="Image-to-image")
    common(edit)
    edit.add_argument("--reference", required=True, help="URL of the image to edit")

    video = kinds.add_parser("video", help="Text-to-video or image-to-video")
    common(video)
    video.add_argument("--reference", help="URL of the first frame (image-to-video)")
    video.add_argument("--aspect-ratio", choices=["16:9", "9:16"], default="16:9")
    video.add_argument("--duration", type=int, choices=[4, 6, 8], default=8)
    video.add_argument("--resolution", choices=["720p", "1080p"], default="720p")

    batch = kinds.add_parser("batch-images", help="Text-to-image for each entry in a JSON file")
    common(batch, with_prompt=False)
    batch.add_argument("file", type=Path, help='JSON list of {"sceneId", "prompt"} objects')


def _payload(
    mode: GenerationMode,
    prompt: str,
    key: str | None = None,
    scene_id: str | None = None,
    character_id: str | None = None,
    storyboard_id: str | None = None,
    reference: str | None = None,
    model: str | None = None,
    **video_options,
) -> GenerationPayload:
    return GenerationPayload(
        idempotency_key=key
        or derive_idempotency_key(
            mode, prompt, entity_id=scene_id or character_id, reference_media_ref=reference
        ),
        mode=mode,
        capability=mode.capability,
        prompt=prompt,
        scene_id=scene_id,
        character_id=character_id,
        storyboard_id=storyboard_id,
        reference_media_ref=reference,
        requested_model_hint=model,
        **video_options,
    )


def build_payloads(args: Namespace) -> list[GenerationPayload]:
    """Turn parsed arguments into validated payloads.

    Raises:
        ValueError: Invalid request or unreadable batch file
    """
    if args.kind == "batch-images":
        entries = json.loads(args.file.read_text(encoding="utf-8"))
        if not isinstance(entries, list):
            raise ValueError(f"{args.file} must contain a JSON list")
        return [
            _payload(
                GenerationMode.TEXT_TO_IMAGE,
                entry["prompt"],
                key=entry.get("idempotencyKey"),
                scene_id=entry.get("sceneId"),
                character_id=entry.get("characterId"),
                storyboard_id=entry.get("storyboardId") or args.storyboard_id,
            )
            for entry in entries
        ]

    common = dict(
        key=args.key,
        scene_id=args.scene_id,
        character_id=args.character_id,
        storyboard_id=args.storyboard_id,
        model=args.model,
    )
    if args.kind == "image":
        return [_payload(GenerationMode.TEXT_TO_IMAGE, args.prompt, **common)]
    if args.kind == "image-edit":
        return [
            _payload(
                GenerationMode.IMAGE_TO_IMAGE, args.prompt, reference=args.reference, **common
            )
        ]

    mode = GenerationMode.IMAGE_TO_VIDEO if args.reference else GenerationMode.TEXT_TO_VIDEO
    return [
        _payload(
            mode,
            args.prompt,
            reference=args.reference,
            aspect_ratio=args.aspect_ratio,
            duration_seconds=args.duration,
            resolution=args.resolution,
            **common,
        )
    ]


async def async_main(args: Namespace, settings: Settings) -> int:
    """Enqueue the requested jobs.

    Returns:
        Exit code: 0 (success), 1 (error)
    """
    if settings.queue_backend == "memory":
        print("Error: QUEUE_BACKEND=memory cannot be shared with a worker", file=sys.stderr)
        return 1

    try:
        payloads = build_payloads(args)
    except (ValidationError, ValueError, KeyError, OSError) as e:
        logger.error("cli.invalid_request", error=str(e), error_type=type(e).__name__)
        print(f"Error: invalid request: {e}", file=sys.stderr)
        return 1

    try:
        async with open_pipeline(settings) as pipeline:
            for payload in payloads:
                message_id = await pipeline.enqueue(payload)
                queue = (
                    settings.image_queue_name
                    if payload.capability is Capability.IMAGE
                    else settings.video_queue_name
                )
                print(f"{queue}\t{message_id}\t{payload.idempotency_key}")
    except QueueUnavailable as e:
        print(f"\nError: {e}", file=sys.stderr)
        return 1

    return 0
