from __future__ import annotations

from mcp.server.fastmcp import FastMCP

PROMPTS = {
    "list-all-deals": (
        "List all deals in Pipedrive",
        "Please list all deals in my Pipedrive account, showing their title, value, status, and stage.",
    ),
    "list-all-persons": (
        "List all persons in Pipedrive",
        "Please list all persons in my Pipedrive account, showing their name, email, phone, and organization.",
    ),
    "list-all-pipelines": (
        "List all pipelines in Pipedrive",
        "Please list all pipelines in my Pipedrive account, showing their name and stages.",
    ),
    "analyze-deals": (
        "Analyze deals by stage",
        "Please analyze the deals in my Pipedrive account, grouping them by stage and providing "
        "total value for each stage.",
    ),
    "analyze-contacts": (
        "Analyze contacts by organization",
        "Please analyze the persons in my Pipedrive account, grouping them by organization and "
        "providing a count for each organization.",
    ),
    "analyze-leads": (
        "Analyze leads by status",
        "Please search for all leads in my Pipedrive account and group them by status.",
    ),
    "compare-pipelines": (
        "Compare different pipelines and their stages",
        "Please list all pipelines in my Pipedrive account and compare them by showing the stages "
        "in each pipeline.",
    ),
    "find-high-value-deals": (
        "Find high-value deals",
        "Please identify the highest value deals in my Pipedrive account and provide information "
        "about which stage they're in and which person or organization they're associated with.",
    ),
}


def register_pipedrive_prompts(mcp: FastMCP) -> None:
    for name, (description, text) in PROMPTS.items():
        _register(mcp, name, description, text)


def _register(mcp: FastMCP, name: str, description: str, text: str) -> None:
    def prompt() -> str:
        return text

    prompt.__name__ = name.replace("-", "_")
    mcp.prompt(name=name, description=description)(prompt)
