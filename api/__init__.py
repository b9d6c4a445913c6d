"""MeetPrep Intelligence API.

This package contains the FastAPI application and the query pipeline
for natural-language questions about meetings.

Main components:
- main.py: FastAPI application, logging and lifespan
- models.py: Pydantic models for requests and responses
- planning/: LLM strategy planning and strategy validation
- execution/: step execution, context store and iterative analysis
- tools/graph_tools.py: typed graph queries behind each query type
- composer/: prompts and final answer synthesis
"""

# Avoid importing heavy modules (e.g., FastAPI app) at package import time to
# prevent side effects when tools (like LangGraph Studio) import `api.*`.
__all__ = []
