"""
Enrichment providers

- OpenLibraryProvider, GoogleBooksProvider: catalog APIs
- GeminiProvider, ClaudeProvider, OpenAIProvider: LLM metadata lookups

Order and enablement come from settings (see registry.build_providers).
"""
