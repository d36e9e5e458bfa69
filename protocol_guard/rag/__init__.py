"""
Protocol RAG module

Components:
- QueryNormalizer: free text -> NormalizedQuery (abbreviations, codes, age)
- ProtocolStore adapters: SQL, in-memory and flat-file tiers
- HybridRetriever: 0.4 * lexical + 0.6 * (1 - cosine distance)
- ValidationPipeline: four severity-tagged stages
- ProtocolRetrievalService: retrieve / validate_context / validate_answer

Architecture:
    query -> normalizer -> Stage 1 -> retriever -> RecoveryManager -> store
                                          |                 |-> cache
                                          |                 |-> file corpus
                                          v                 '-> safe default
                                      Stage 2 -> chunks -> Stage 3 -> answer -> Stage 4
"""
