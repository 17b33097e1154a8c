#!/usr/bin/env python3
"""
Queued Completions Example - Many callers, one model

This example submits structured and plain-text completions before the model
has finished loading. They are answered in submission order once it loads,
one engine call at a time.

Requirements:
- mlx-queue-serving installed with the mlx extra
- An MLX text model (config/runtime.yaml model.model_id)

Usage:
    python examples/structured/queued_completions_example.py
"""

import asyncio
import json
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../python'))

from config_loader import initialize_config
from errors import ResponseParseError
from runtime import build_service, configure_logging


STRUCTURED_PROMPT = (
    "Reply with a JSON object inside a ```json fenced block with a single "
    "\"content\" field greeting the user.\n"
)

TEXT_PROMPTS = [
    "Write one sentence about state space models.\n",
    "Name three uses for a request queue.\n",
]


async def main():
    print("Queued Completions Example")
    print("=" * 60)

    config = initialize_config()
    configure_logging(config)
    service = build_service(config)

    # Submitted before the engine loads; they wait in the queue
    structured = service.submit_completion(STRUCTURED_PROMPT, 0.2, ["</s>"], 0.0, 0.0, 128)
    texts = [service.submit_text(prompt, 0.7, ["</s>"], 0.2, 0.0, 96) for prompt in TEXT_PROMPTS]
    print(f"Queued {len(service.queue)} request(s), loading {service.model_id}...")

    try:
        await service.initialize()

        try:
            value = await structured
            print("\nStructured result:")
            print(json.dumps(value, indent=2))
        except ResponseParseError as e:
            print(f"\nModel did not return JSON: {e.message}")

        for prompt, future in zip(TEXT_PROMPTS, texts):
            print(f"\n{'='*60}")
            print(f"Prompt: {prompt.strip()}")
            print(f"{'='*60}")
            print(await future)

        vector = await service.embed("queue")
        if vector is None:
            print("\nEmbedding unavailable for this model")
        else:
            print(f"\nEmbedding dimensions: {len(vector)}")

        print("\nState:", json.dumps(service.get_state(), indent=2))

    except Exception as e:
        print(f"\nError: {e}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    asyncio.run(main())
