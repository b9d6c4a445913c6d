"""
Prompt templates for the meeting intelligence pipeline.

Each LLM-backed stage (planning, analysis, follow-up generation, synthesis)
owns a dedicated system prompt demanding the output contract it parses, and a
``PromptTemplate`` for the user message. ``build_*`` helpers assemble the
template variables from pipeline state.
"""

import json
from typing import Any, Dict, List, Optional

from langchain_core.prompts import PromptTemplate

# ==============================================================================
# GRAPH CAPABILITIES
# ==============================================================================

DATABASE_CAPABILITIES = """### Graph Schema
- (:Person {email, name, department, title})
- (:Meeting {id, googleEventId, title, description, startTime, endTime, location, hangoutLink})
- (:Document {id, title, url, mimeType})
- (:Person)-[:ORGANIZED]->(:Meeting)
- (:Person)-[:ATTENDED {responseStatus}]->(:Meeting)
- (:Meeting)-[:HAS_DOCUMENT]->(:Document)

Indexed lookups: Person.email, Meeting.googleEventId, Meeting.startTime, Document.id.

### Query Types
| queryType | Purpose | Key parameters | Cost |
|---|---|---|---|
| find_meetings | Meetings in a time window, optionally with a participant or keyword | timeframe, startDate, endDate, participantEmail, keyword, limit | fast |
| get_participants | People who attended meetings, optionally filtered | meetingIds, emailDomain, department, limit | fast |
| find_documents | Documents attached to meetings | meetingIds, keyword, limit | fast |
| analyze_relationships | Direct meeting relationships of one person | personEmail | medium |
| general_query | Recent meetings for the user when nothing more specific fits | keyword, limit | fast |
| analyze_collaboration | Pairs of people who meet together, with counts | timeframe, department | slow |
| find_frequent_collaborators | The user's most frequent co-attendees | timeframe, limit | medium |
| analyze_meeting_patterns | Meeting counts by weekday and hour | timeframe | medium |
| get_department_insights | Meeting and people counts per department | department, timeframe | slow |
| analyze_topic_trends | Frequent words in meeting titles over time | timeframe, limit | slow |
| find_meeting_conflicts | Overlapping meetings for the user | timeframe | medium |
| get_productivity_insights | Meeting load and hours per week | timeframe | medium |
| analyze_communication_flow | Organizer to attendee flow between people | timeframe, limit | slow |

### Timeframes
`today`, `tomorrow`, `yesterday`, `this_week`, `last_week`, `next_week`, `this_month`,
`last_month`, `recent` (last 30 days), a month name (e.g. `august`), or explicit ISO
`startDate`/`endDate`.

### Performance Guidance
- Apply a timeframe on every meeting-based step.
- Run filtering lookups (find_meetings, get_participants, find_documents) before analysis types.
- A step may reference earlier results with `"stepN_results"` or by declaring a dependency;
  meeting ids and participant emails from dependencies are passed along automatically.
"""

# ==============================================================================
# QUERY PLANNING
# ==============================================================================

STRATEGY_PLANNING_SYSTEM_PROMPT = """You are an expert database query strategist for an organizational intelligence system. You turn user questions about meetings into efficient, multi-step query strategies.

CRITICAL: Respond ONLY with a valid JSON strategy object. Do not answer the question, describe results or add commentary.

Principles:
1. Start with indexed lookups and apply filters early
2. Each step builds on earlier results through dependencies
3. Keep expensive analysis steps few and time-bounded
4. The strategy must fully answer the user's question

You have access to a Neo4j graph of Person, Meeting and Document nodes and 13 query types."""

STRATEGY_PLANNING_TEMPLATE = PromptTemplate.from_template(
    """# Query Strategy Planning Request

## User Query
"{user_query}"

## Database Capabilities
{capabilities}

## Context
{user_context}{conversation_context}

## Task
Break the question into ordered query steps using only the query types above.
Declare dependencies on earlier step numbers only.

## Strategy Format
```json
{{
  "analysis": "Brief analysis of what the user is asking for",
  "complexity": "low|medium|high",
  "steps": [
    {{
      "stepNumber": 1,
      "description": "What this step accomplishes",
      "queryType": "find_meetings",
      "parameters": {{"timeframe": "this_week"}},
      "dependencies": [],
      "estimatedTime": "fast|medium|slow",
      "purpose": "Why this step is needed"
    }}
  ],
  "expectedOutcome": "What the final result should provide to the user",
  "followUpQuestions": ["Suggested follow-up question"]
}}
```

RESPOND WITH JSON ONLY. NO OTHER TEXT."""
)

# ==============================================================================
# ITERATIVE ANALYSIS
# ==============================================================================

ANALYSIS_SYSTEM_PROMPT = """You are an expert data analyst for organizational intelligence and meeting data. You judge whether intermediate query results are sufficient to answer the original question.

Principles:
1. Identify gaps that would materially improve the final answer
2. Ignore follow-ups that add little value
3. Consider the original strategy and expected outcome

Respond ONLY with a JSON object."""

ANALYSIS_TEMPLATE = PromptTemplate.from_template(
    """# Intermediate Results Analysis

## Original Strategy
**Analysis**: {analysis}
**Expected Outcome**: {expected_outcome}
**Complexity**: {complexity}

## Executed Steps Summary
{steps_summary}

## Aggregated Data
- **Total Results**: {total_results}
- **People Found**: {people_count}
- **Meetings Found**: {meetings_count}
- **Documents Found**: {documents_count}
- **Topics Identified**: {topics_count}

## Results by Query Type
{results_by_type}

## Response Format
```json
{{
  "summary": "Brief analysis of the current results",
  "completeness": 0.8,
  "confidence": 0.8,
  "insights": ["Key insight"],
  "gaps": ["Missing information"],
  "recommendations": ["Recommendation for additional analysis"]
}}
```"""
)

FOLLOW_UP_SYSTEM_PROMPT = """You are an expert query strategist for iterative analysis. You generate the few additional query steps that best close the gaps found in an analysis.

Principles:
1. Target specific identified gaps
2. Minimize the number of additional queries
3. Only use the listed query types

Respond ONLY with a JSON object."""

# The 11 types offered for follow-ups (no general_query, no analyze_relationships)
FOLLOW_UP_QUERY_CATALOG = [
    ("find_meetings", "Find meetings with specific criteria"),
    ("get_participants", "Find people and participants"),
    ("find_documents", "Find documents and files"),
    ("analyze_collaboration", "Analyze collaboration patterns"),
    ("find_frequent_collaborators", "Find key collaborators"),
    ("analyze_meeting_patterns", "Analyze meeting timing patterns"),
    ("get_department_insights", "Department-specific analytics"),
    ("analyze_topic_trends", "Topic and content analysis"),
    ("find_meeting_conflicts", "Scheduling conflict detection"),
    ("get_productivity_insights", "Productivity metrics"),
    ("analyze_communication_flow", "Communication patterns"),
]

FOLLOW_UP_TEMPLATE = PromptTemplate.from_template(
    """# Follow-up Query Generation

## Original Strategy
**Analysis**: {analysis}
**Expected Outcome**: {expected_outcome}
**Steps Already Executed**: {executed_steps}

## Current Analysis Results
**Completeness**: {completeness}
**Confidence**: {confidence}

## Identified Gaps
{gaps}

## Recommendations
{recommendations}

## Available Query Types
{catalog}

## Task
Generate 1-{max_steps} follow-up query steps that address the gaps.
Dependencies may reference any executed step number.

## Response Format
```json
{{
  "followUpSteps": [
    {{
      "description": "What this step accomplishes",
      "queryType": "find_meetings",
      "parameters": {{"timeframe": "recent"}},
      "dependencies": [],
      "estimatedTime": "fast|medium|slow",
      "purpose": "Which gap this closes"
    }}
  ]
}}
```"""
)

# ==============================================================================
# SYNTHESIS
# ==============================================================================

SYNTHESIS_SYSTEM_PROMPT = """You are a meeting preparation assistant. Answer the user's question using only the query results provided.

Rules:
- Be concise and specific: name people, meetings and dates from the data
- If the data is incomplete, say what is missing
- Never invent meetings, people or documents"""

SYNTHESIS_TEMPLATE = PromptTemplate.from_template(
    """## Question
{user_query}

## Strategy
{analysis}

## Results
{results}

## Analysis
Insights: {insights}
Gaps: {gaps}

Write the answer for the user."""
)

# ==============================================================================
# TEMPLATE REGISTRY
# ==============================================================================

_TEMPLATES: Dict[str, PromptTemplate] = {
    "strategy_planning": STRATEGY_PLANNING_TEMPLATE,
    "analysis": ANALYSIS_TEMPLATE,
    "follow_up": FOLLOW_UP_TEMPLATE,
    "synthesis": SYNTHESIS_TEMPLATE,
}

_SYSTEM_PROMPTS: Dict[str, str] = {
    "strategy_planning": STRATEGY_PLANNING_SYSTEM_PROMPT,
    "analysis": ANALYSIS_SYSTEM_PROMPT,
    "follow_up": FOLLOW_UP_SYSTEM_PROMPT,
    "synthesis": SYNTHESIS_SYSTEM_PROMPT,
}


def get_prompt_template(template_name: str) -> PromptTemplate:
    """
    Get a user prompt template by name.

    Raises:
        ValueError: If template_name is not found
    """
    if template_name not in _TEMPLATES:
        raise ValueError(f"Unknown template: {template_name}. Available: {list(_TEMPLATES)}")
    return _TEMPLATES[template_name]


def get_system_prompt(template_name: str) -> str:
    """Get the system prompt paired with a template."""
    if template_name not in _SYSTEM_PROMPTS:
        raise ValueError(f"Unknown template: {template_name}. Available: {list(_SYSTEM_PROMPTS)}")
    return _SYSTEM_PROMPTS[template_name]


# ==============================================================================
# PROMPT BUILDERS
# ==============================================================================

def format_conversation_history(history: List[Dict[str, Any]], turns: int = 3) -> str:
    """Format the last ``turns`` conversation entries, truncating answers to 100 chars."""
    lines = []
    for index, item in enumerate(history[-turns:], 1):
        response = str(item.get("response") or "")[:100]
        lines.append(f'{index}. Q: "{item.get("query", "")}" A: "{response}..."')
    return "\n".join(lines)


def build_planning_prompt(user_query: str, context: Dict[str, Any], history_turns: int = 3) -> str:
    """Render the strategy planning prompt."""
    user = context.get("user") or {}
    user_context = ""
    if user:
        user_context = f"\n\nUser Context:\n- Email: {user.get('email', '')}\n- Name: {user.get('name', '')}"

    conversation_context = ""
    history = context.get("conversation_history") or []
    if history:
        conversation_context = "\n\nConversation History:\n" + format_conversation_history(history, history_turns)

    return STRATEGY_PLANNING_TEMPLATE.format(
        user_query=user_query,
        capabilities=DATABASE_CAPABILITIES,
        user_context=user_context,
        conversation_context=conversation_context,
    )


def build_analysis_prompt(
    results_summary: List[Dict[str, Any]],
    strategy: Dict[str, Any],
    aggregated: Dict[str, Any],
) -> str:
    """Render the intermediate results analysis prompt."""
    entities = aggregated.get("entities", {})
    return ANALYSIS_TEMPLATE.format(
        analysis=strategy.get("analysis", ""),
        expected_outcome=strategy.get("expectedOutcome", ""),
        complexity=strategy.get("complexity", "medium"),
        steps_summary=json.dumps(results_summary, indent=2),
        total_results=aggregated.get("totalResults", 0),
        people_count=len(entities.get("people", [])),
        meetings_count=len(entities.get("meetings", [])),
        documents_count=len(entities.get("documents", [])),
        topics_count=len(entities.get("topics", [])),
        results_by_type=json.dumps(aggregated.get("resultsByType", {}), indent=2),
    )


def build_follow_up_prompt(
    strategy: Dict[str, Any],
    completeness: float,
    confidence: float,
    gaps: List[str],
    recommendations: List[str],
    max_steps: int = 3,
) -> str:
    """Render the follow-up step generation prompt."""
    executed = [str(step.get("stepNumber")) for step in strategy.get("steps", [])]
    return FOLLOW_UP_TEMPLATE.format(
        analysis=strategy.get("analysis", ""),
        expected_outcome=strategy.get("expectedOutcome", ""),
        executed_steps=", ".join(executed) or "none",
        completeness=f"{completeness:.2f}",
        confidence=f"{confidence:.2f}",
        gaps="\n".join(f"- {gap}" for gap in gaps) or "- none reported",
        recommendations="\n".join(f"- {rec}" for rec in recommendations) or "- none",
        catalog="\n".join(f"- {name}: {purpose}" for name, purpose in FOLLOW_UP_QUERY_CATALOG),
        max_steps=max_steps,
    )


def build_synthesis_prompt(
    user_query: str,
    analysis: str,
    results: List[Dict[str, Any]],
    insights: Optional[List[str]] = None,
    gaps: Optional[List[str]] = None,
    max_items_per_step: int = 20,
) -> str:
    """Render the final answer prompt from successful step results."""
    blocks = []
    for result in results:
        rows = result.get("results", {}).get("results", [])
        blocks.append(
            f"### Step {result.get('stepNumber')} ({result.get('queryType')}): {result.get('description', '')}\n"
            f"{json.dumps(rows[:max_items_per_step], default=str, indent=1)}"
        )

    return SYNTHESIS_TEMPLATE.format(
        user_query=user_query,
        analysis=analysis,
        results="\n\n".join(blocks) or "No results were found.",
        insights="; ".join(insights or []) or "none",
        gaps="; ".join(gaps or []) or "none",
    )
