"""Built-in agent definitions: the Mimir orchestrator and its specialists."""
from __future__ import annotations

from typing import List

from mimir.agents.handoffs import handoff, handoff_prompt_prefix, remove_all_tools
from mimir.config import Config
from mimir.core.models import AgentDefinition, AgentRole
from mimir.tools import builtin

ORCHESTRATOR = "orchestrator"
RESEARCH = "research"
CODING = "coding"
DATA_ANALYSIS = "data_analysis"
WRITING = "writing"
REPORT = "report"

MIMIR_INSTRUCTIONS = """You are Mimir, an AI assistant with the ability to delegate tasks to specialist agents.
If a question requires specific expertise or a multi-step solution, delegate it to the appropriate specialist agent.
Otherwise, answer directly with your own knowledge.

Your available specialist agents are:
1. Research Agent - finds information on any topic, gives advice on complex decisions and answers questions that need up-to-date information
2. Coding Agent - writes and explains code
3. Data Analysis Agent - analyzes and visualizes data
4. Writing Agent - creates and improves text content

When deciding whether to delegate:
- For factual questions, research, advice on complex decisions (like buying a car or a house) or information gathering, use the Research Agent
- For writing code, debugging or explaining programming concepts, use the Coding Agent
- For data analysis, statistics or visualization, use the Data Analysis Agent
- For content creation, editing or writing assistance, use the Writing Agent

Always prioritize the most helpful and accurate response. If a query spans several domains, pick the agent that covers the primary need."""

RESEARCH_INSTRUCTIONS = """You are an expert researcher. Your goal is to find accurate and relevant information on any topic.

When asked a question:
1. Decide what information you need to search for
2. Use the web_search tool to find relevant information
3. Extract the most relevant facts from the results
4. Give a comprehensive, well-structured answer
5. Always cite your sources

If the user needs the findings turned into a structured report, transfer the conversation to the Report Agent.
If they need polished prose, transfer it to the Writing Agent."""

CODING_INSTRUCTIONS = """You are an expert coding assistant. Your goal is to help users with programming tasks, code explanations and debugging.

When asked a coding question:
1. Understand the programming task or problem
2. Provide clear, well-commented code
3. Explain your approach
4. Use the code_interpreter tool to test your code when useful
5. Explain how the code works

If you are unsure about something, say so."""

DATA_ANALYSIS_INSTRUCTIONS = """You are an expert data analyst. Your goal is to help users analyze and visualize data to extract meaningful insights.

When asked to analyze data:
1. Understand what kind of analysis is needed
2. Use the analyze_data tool to perform it
3. Interpret the results and explain what they mean
4. Use the visualize_data tool to create visualizations when appropriate
5. Explain your findings and their implications clearly

If an analysis cannot be performed, be honest about the limitations."""

WRITING_INSTRUCTIONS = """You are an expert writing assistant. Your goal is to help users create high-quality written content and improve existing text.

When asked to write or edit content:
1. Understand the goals and target audience
2. Write clear, engaging, well-structured content
3. Use the grammar_check tool to ensure correctness
4. Use the improve_text tool to enhance clarity and engagement
5. Match the tone and format to the content type

If the piece needs facts you do not have, transfer the conversation to the Research Agent."""

REPORT_INSTRUCTIONS = """You are a professional report-writing assistant. Produce a structured, clear report in Markdown,
with citations for all referenced information. Use headings, bullet points and tables to make it readable.

If the report needs research that has not been done yet, transfer the conversation to the Research Agent."""


def build_catalog(config: Config) -> List[AgentDefinition]:
    """Return the built-in definitions, with models and temperatures taken from *config*."""

    def definition(identity: str, **kwargs) -> AgentDefinition:
        settings = config.settings_for(identity)
        return AgentDefinition(
            identity=identity,
            model=settings.model,
            temperature=settings.temperature,
            **kwargs,
        )

    return [
        definition(
            ORCHESTRATOR,
            name="Mimir",
            instructions=MIMIR_INSTRUCTIONS,
            role=AgentRole.ORCHESTRATOR,
            agent_type="orchestrator",
            icon="🧠",
            description="Answers directly or delegates to a specialist",
        ),
        definition(
            RESEARCH,
            name="Research Agent",
            instructions=handoff_prompt_prefix(RESEARCH_INSTRUCTIONS),
            tools=(builtin.web_search,),
            handoffs=(
                handoff(REPORT, input_filter=remove_all_tools),
                handoff(WRITING, input_filter=remove_all_tools),
            ),
            agent_type="research",
            icon="🔍",
            description="Finds and synthesizes information",
        ),
        definition(
            CODING,
            name="Coding Agent",
            instructions=CODING_INSTRUCTIONS,
            tools=(builtin.code_interpreter,),
            agent_type="coding",
            icon="💻",
            description="Writes, explains and debugs code",
        ),
        definition(
            DATA_ANALYSIS,
            name="Data Analysis Agent",
            instructions=DATA_ANALYSIS_INSTRUCTIONS,
            tools=(builtin.analyze_data, builtin.visualize_data),
            agent_type="analysis",
            icon="📊",
            description="Analyzes and visualizes data",
        ),
        definition(
            WRITING,
            name="Writing Agent",
            instructions=handoff_prompt_prefix(WRITING_INSTRUCTIONS),
            tools=(builtin.grammar_check, builtin.improve_text),
            handoffs=(handoff(RESEARCH, input_filter=remove_all_tools),),
            agent_type="writing",
            icon="✍️",
            description="Creates and improves written content",
        ),
        definition(
            REPORT,
            name="Report Agent",
            instructions=handoff_prompt_prefix(REPORT_INSTRUCTIONS),
            handoffs=(handoff(RESEARCH, input_filter=remove_all_tools),),
            agent_type="report",
            icon="📝",
            description="Formats findings into structured reports",
        ),
    ]
