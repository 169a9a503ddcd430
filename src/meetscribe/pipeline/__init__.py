"""Meeting processing pipeline -- chunks in, transcript and summary out.

Provides the chunk store, transcript assembler, summary job controller,
share link registry and status publisher, wired together by
MeetingPipeline, plus the SQLAlchemy repository and upstream clients
(Deepgram, LiteLLM) they depend on.
"""
