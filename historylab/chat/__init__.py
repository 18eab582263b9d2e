"""
Chat Package — Messages • Tools • Streaming • Reconciliation • Turns
====================================================================

Contents
--------
- messages / identity
    Typed message parts and the opaque conversation id codec.
- tools / search_filters / prompts
    The fixed tool catalog offered to the model and its argument handling.
- streaming / reconciliation
    The per-turn merge channel and the confirmation-aware tool resolver.
- provider / orchestrator / actor
    The LangChain step loop, the turn state machine and per-conversation serialization.
- citations / export / conversation_log
    Citation rendering, markdown transcripts and the per-conversation analytics log.

Transport and storage live elsewhere: nothing in this package imports FastAPI.
"""
