# Session and streaming-decode engine
#
# This package drives an inference backend one token at a time on behalf
# of a chat session.
#
# Key components:
#   - adapters/        Inference backends (Transformers text + vision)
#   - registry.py      Maps backend names to adapters
#   - conversation.py  Chat history and incremental prompt formatting
#   - utf8.py          Reassembly of byte-level token pieces into text
#   - completion.py    Step-at-a-time decode loop
#   - multimodal.py    Frame staging and image + text prompt evaluation
#   - session.py       ChatSession / MultimodalSession facades
