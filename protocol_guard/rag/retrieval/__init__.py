"""Lexical index, embedders and the hybrid retriever."""
