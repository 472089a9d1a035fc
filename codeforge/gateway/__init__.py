"""Code Generation Gateway.

Turns a natural-language prompt into a set of source files with:
  - Credential Pools (round-robin key rotation with rate-limit recovery)
  - Response Cache (exact and fuzzy TTL lookup)
  - Provider Adapters (Ollama, Groq, HuggingFace, OpenAI, Anthropic, Gemini, DeepSeek)
  - Stream Reconstructor (incremental `data:` record parsing)
  - Silent Audit (optional sandboxed repair pass)
  - Orchestrator (fallback chain and streaming router)
"""
