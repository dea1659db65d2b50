"""
Prompt templates for the three request kinds.

Prompts are deterministic for a given input so that identical contexts
produce identical provider requests.
"""

from typing import List, Sequence

PREDICT_HISTORY_LIMIT = 10
COMPLETE_HISTORY_LIMIT = 5
NL2CMD_HISTORY_LIMIT = 3


def _context_header(lines: List[str], os_info: str) -> None:
    lines.append("Context:")
    if os_info:
        lines.append(f"- OS: {os_info}")


def _numbered(commands: Sequence[str]) -> List[str]:
    return [f"  {i}. {command}" for i, command in enumerate(commands, start=1)]


def build_predict_prompt(history: Sequence[str], cwd: str, git_branch: str, os_info: str) -> str:
    """Prompt for predicting the next command.

    History is listed most recent first, limited to PREDICT_HISTORY_LIMIT.
    """
    lines = ["You are a shell command prediction assistant.", ""]
    _context_header(lines, os_info)
    lines.append(f"- Working directory: {cwd}")
    if git_branch:
        lines.append(f"- Git branch: {git_branch}")
    if history:
        lines.append("- Recent commands:")
        recent = list(history[-PREDICT_HISTORY_LIMIT:])
        lines.extend(_numbered(list(reversed(recent))))

    lines += [
        "",
        "Predict the next most likely command the user will execute.",
        "Rules:",
        "- Return ONLY the command, no explanation",
        "- Consider the workflow pattern",
        "- Be concise and practical",
        "- Do not include markdown code blocks",
        "",
        "Command:",
    ]
    return "\n".join(lines)


def build_complete_prompt(prefix: str, history: Sequence[str], cwd: str, os_info: str) -> str:
    """Prompt for completing a partially typed command."""
    lines = ["You are a shell command completion assistant.", ""]
    _context_header(lines, os_info)
    lines.append(f"- Current directory: {cwd}")
    lines.append(f"- Partial command: {prefix}")
    if history:
        lines.append("- Recent commands:")
        lines.extend(_numbered(history[-COMPLETE_HISTORY_LIMIT:]))

    lines += [
        "",
        "Complete the partial command to a full, valid command.",
        "Rules:",
        "- Return ONLY the completed command",
        "- Ensure it starts with or relates to the given prefix",
        "- Be practical and safe",
        "- Do not include markdown code blocks",
        "",
        "Completed command:",
    ]
    return "\n".join(lines)


def build_nl2cmd_prompt(description: str, cwd: str, history: Sequence[str], os_info: str) -> str:
    """Prompt for turning a natural-language description into a command."""
    lines = [
        "You are a shell command generator.",
        "",
        "Task: Convert natural language description to a shell command.",
    ]
    _context_header(lines, os_info)
    lines.append(f"- Current directory: {cwd}")
    lines.append(f"- Description: {description}")
    if history:
        lines.append("- Recent commands (for context):")
        lines.extend(_numbered(history[-NL2CMD_HISTORY_LIMIT:]))

    lines += [
        "",
        "Generate a safe, practical shell command that accomplishes the task.",
        "Rules:",
        "- Return ONLY the command, no explanation",
        "- Ensure the command is safe (no destructive operations without confirmation)",
        "- Use common Unix/Linux tools",
        "- Be concise and practical",
        "- Do not include markdown code blocks",
        "",
        "Command:",
    ]
    return "\n".join(lines)
