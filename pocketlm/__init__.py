"""
pocketlm - on-device chat sessions with streaming, step-at-a-time decoding.

A session owns one loaded model, its conversation history and the decode
loop. Callers pull text one step at a time, or stream it:

    from pocketlm import ChatSession, InferenceParams

    with ChatSession.load("HuggingFaceTB/SmolLM2-360M-Instruct", InferenceParams(temperature=0.7)) as chat:
        chat.add_system_prompt("You are a concise assistant.")
        for piece in chat.stream_response("Name three rivers."):
            print(piece, end="", flush=True)
        print(f"\\n{chat.response_generation_speed:.1f} tok/s")

Vision-language models go through `MultimodalSession`: stage RGB frames with
`add_frame_rgb()`, call `build(prompt)`, then stream the reply.
"""

from pocketlm._version import __version__

from pocketlm.engine.chat_types import ChatMessage, ImageFrame
from pocketlm.engine.errors import (
    ContextWindowExceeded,
    DecodeFailure,
    InvalidFrameDimensions,
    ModelLoadError,
    MultimodalBuildFailure,
    PocketLMError,
    TemplateRenderError,
)
from pocketlm.engine.session import ChatSession, MultimodalSession
from pocketlm.engine.types import InferenceParams, MultimodalParams

__all__ = [
    "__version__",
    # Sessions
    "ChatSession",
    "MultimodalSession",
    "InferenceParams",
    "MultimodalParams",
    # Types
    "ChatMessage",
    "ImageFrame",
    # Errors
    "PocketLMError",
    "ModelLoadError",
    "TemplateRenderError",
    "ContextWindowExceeded",
    "DecodeFailure",
    "InvalidFrameDimensions",
    "MultimodalBuildFailure",
]
