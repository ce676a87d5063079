"""Simulated built-in tools used by the specialist agents."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional
from urllib.parse import quote_plus

from pydantic import BaseModel, Field

from mimir.tools.registry import function_tool

logger = logging.getLogger(__name__)

SIMULATED_LATENCY = 0.1


class WebSearchArgs(BaseModel):
    query: str = Field(..., description="What to search for")


class CodeInterpreterArgs(BaseModel):
    code: str = Field(..., description="Source code to execute")
    language: str = Field(default="python", description="Programming language of the code")


class AnalyzeDataArgs(BaseModel):
    data: Any = Field(..., description="The data to analyze")
    analysis_type: str = Field(..., description="Kind of analysis, e.g. descriptive or regression")


class VisualizeDataArgs(BaseModel):
    data: Any = Field(..., description="The data to plot")
    chart_type: str = Field(..., description="Chart type, e.g. bar or line")


class GrammarCheckArgs(BaseModel):
    text: str = Field(..., description="Text to check")


class ImproveTextArgs(BaseModel):
    text: str = Field(..., description="Text to improve")
    goal: Optional[str] = Field(default=None, description="What the improvement should achieve")


@function_tool("web_search", "Search the web for information on a given topic", WebSearchArgs)
async def web_search(query: str) -> Dict[str, Any]:
    logger.debug("Simulated web search for %r", query)
    await asyncio.sleep(SIMULATED_LATENCY)
    return {
        "results": [
            {
                "title": f"Information about {query}",
                "snippet": f"Simulated search result about {query}.",
                "url": f"https://example.com/search?q={quote_plus(query)}",
            },
            {
                "title": f"More about {query}",
                "snippet": f"Additional information about {query} from a different source.",
                "url": f"https://example.org/info?topic={quote_plus(query)}",
            },
        ]
    }


@function_tool("code_interpreter", "Execute code and return the result", CodeInterpreterArgs)
async def code_interpreter(code: str, language: str = "python") -> Dict[str, Any]:
    logger.debug("Simulated %s execution (%d chars)", language, len(code))
    await asyncio.sleep(SIMULATED_LATENCY)
    return {"result": f"Simulated output of executing {language} code.", "success": True}


@function_tool("analyze_data", "Analyze data and generate insights", AnalyzeDataArgs)
async def analyze_data(data: Any, analysis_type: str) -> Dict[str, Any]:
    await asyncio.sleep(SIMULATED_LATENCY)
    return {
        "summary": f"Simulated {analysis_type} analysis of the provided data.",
        "insights": [
            "Simulated insight 1 from the data",
            "Simulated insight 2 from the data",
        ],
    }


@function_tool("visualize_data", "Create visualizations from data", VisualizeDataArgs)
async def visualize_data(data: Any, chart_type: str) -> Dict[str, Any]:
    await asyncio.sleep(SIMULATED_LATENCY)
    return {
        "chart_url": f"https://example.com/chart?type={quote_plus(chart_type)}",
        "description": f"A {chart_type} visualization of the provided data.",
    }


@function_tool("grammar_check", "Check text for grammar and spelling errors", GrammarCheckArgs)
async def grammar_check(text: str) -> Dict[str, Any]:
    await asyncio.sleep(SIMULATED_LATENCY)
    return {"corrected_text": text, "suggestions": [], "score": 95}


@function_tool(
    "improve_text",
    "Suggest improvements for clarity, conciseness, and engagement",
    ImproveTextArgs,
)
async def improve_text(text: str, goal: Optional[str] = None) -> Dict[str, Any]:
    await asyncio.sleep(SIMULATED_LATENCY)
    return {
        "improved_text": text,
        "goal": goal or "clarity",
        "suggestions": ["Simulated suggestion for further improvement"],
    }
