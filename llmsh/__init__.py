"""
llmsh - LLM-powered shell command prediction, completion and generation.

Backend for the zsh plugin: reads a JSON request on stdin, answers on stdout.
"""

__version__ = "0.1.0"
