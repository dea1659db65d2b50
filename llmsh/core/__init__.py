"""
Core modules for llmsh.

This package contains sensitive-data filtering, cache fingerprinting,
prompt assembly, usage aggregation and the request orchestrator.
"""
