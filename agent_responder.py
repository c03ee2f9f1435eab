"""
Agent responder.

Maps (agent type, task text) to a canned reply and records every invocation as an
Execution row: inserted as ``pending`` before processing, updated exactly once to
``completed`` or ``failed`` with a completion timestamp. The REST surface calls
``execute``; the relay calls ``start`` and ``finish`` separately so it can defer
the second half.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from sqlalchemy import case, func

import models
from database import SessionLocal
from errors import InternalError, NotFoundError, ValidationError

logger = logging.getLogger("CollabBackend.agents")


def camel_case(text: str) -> str:
    def repl(match):
        word = match.group(0)
        return word.lower() if match.start() == 0 else word.upper()

    return re.sub(r"\s+", "", re.sub(r"(?:^\w|[A-Z]|\b\w)", repl, text))


def kebab_case(text: str) -> str:
    text = re.sub(r"([a-z])([A-Z])", r"\1-\2", text)
    return re.sub(r"[\s_]+", "-", text).lower()


def capability_keyword(capability: str) -> str:
    return capability.replace("_", " ").lower()


DISPLAY_WORDS = {"seo": "SEO", "api": "API", "react": "React", "ui": "UI", "ux": "UX"}


def describe_capabilities(capabilities: List[str]) -> str:
    """color_schemes, layout_suggestions -> 'color schemes and layout suggestions'"""
    phrases = [
        " ".join(DISPLAY_WORDS.get(word, word) for word in capability_keyword(cap).split())
        for cap in capabilities
    ]
    if not phrases:
        return "general tasks"
    if len(phrases) == 1:
        return phrases[0]
    if len(phrases) == 2:
        return f"{phrases[0]} and {phrases[1]}"
    return f"{', '.join(phrases[:-1])}, and {phrases[-1]}"


def _color_schemes(task):
    return (
        "Here's a color scheme for your project:\n"
        "- Primary: #3B82F6 (Blue)\n"
        "- Secondary: #10B981 (Green)\n"
        "- Accent: #F59E0B (Amber)\n"
        "- Neutral: #6B7280 (Gray)\n"
        "- Background: #F9FAFB (Light Gray)"
    )


def _layout_suggestions(task):
    return (
        "Layout suggestions for your design:\n"
        "- Use a 12-column grid system\n"
        "- Implement responsive breakpoints at 768px, 1024px, 1280px\n"
        "- Maintain 16px base spacing unit\n"
        "- Use consistent 8px spacing scale"
    )


def _component_generation(task):
    return (
        "Component design recommendations:\n"
        "- Create reusable button variants (primary, secondary, ghost)\n"
        "- Implement consistent form field styling\n"
        "- Use consistent typography scale (12px, 14px, 16px, 20px, 24px, 32px)\n"
        "- Apply consistent border radius (4px, 8px, 12px)"
    )


def _react_components(task):
    name = camel_case(task)
    return (
        "Here's a React component for your request:\n"
        "```jsx\n"
        "import React from 'react';\n"
        "\n"
        f"const {name} = ({{ className = '', ...props }}) => {{\n"
        "  return (\n"
        "    <div className={`component ${className}`} {...props}>\n"
        "      {/* Component implementation */}\n"
        "    </div>\n"
        "  );\n"
        "};\n"
        "\n"
        f"export default {name};\n"
        "```"
    )


def _styling(task):
    return (
        "CSS styling recommendations:\n"
        "```css\n"
        f".{kebab_case(task)} {{\n"
        "  display: flex;\n"
        "  flex-direction: column;\n"
        "  gap: 1rem;\n"
        "  padding: 1rem;\n"
        "  border-radius: 0.5rem;\n"
        "  background: white;\n"
        "  box-shadow: 0 1px 3px rgba(0, 0, 0, 0.1);\n"
        "}\n"
        "```"
    )


def _api_integration(task):
    return (
        "API integration pattern:\n"
        "```javascript\n"
        "const apiCall = async (endpoint, options = {}) => {\n"
        "  try {\n"
        "    const response = await fetch(`/api/${endpoint}`, {\n"
        "      headers: {\n"
        "        'Content-Type': 'application/json',\n"
        "        'Authorization': `Bearer ${token}`\n"
        "      },\n"
        "      ...options\n"
        "    });\n"
        "\n"
        "    if (!response.ok) throw new Error('API call failed');\n"
        "    return await response.json();\n"
        "  } catch (error) {\n"
        "    console.error('API Error:', error);\n"
        "    throw error;\n"
        "  }\n"
        "};\n"
        "```"
    )


def _copywriting(task):
    return (
        f'Copywriting suggestions for "{task}":\n'
        "- Use clear, concise language\n"
        "- Focus on benefits rather than features\n"
        "- Include a strong call-to-action\n"
        "- Maintain consistent brand voice\n"
        "- Use active voice and short sentences"
    )


def _seo_optimization(task):
    return (
        "SEO optimization for your content:\n"
        "- Include target keywords naturally\n"
        "- Write compelling meta descriptions (150-160 characters)\n"
        "- Use proper heading hierarchy (H1, H2, H3)\n"
        "- Include internal and external links\n"
        "- Optimize for featured snippets"
    )


def _content_strategy(task):
    return (
        "Content strategy recommendations:\n"
        "- Define your target audience\n"
        "- Create content pillars around your expertise\n"
        "- Plan content calendar with consistent publishing\n"
        "- Repurpose content across different formats\n"
        "- Measure engagement and adjust strategy"
    )


def _analysis(task):
    return (
        "Analysis Agent: I can help analyze data, identify patterns, and provide insights. "
        f'For "{task}", I recommend:\n'
        "- Collecting relevant data points\n"
        "- Identifying key metrics and KPIs\n"
        "- Looking for trends and patterns\n"
        "- Providing actionable recommendations\n"
        "- Creating visual representations of findings"
    )


@dataclass
class AgentProfile:
    # label used when a declared capability matches but has no template
    matched_label: str
    advice: str
    templates: Dict[str, Callable[[str], str]] = field(default_factory=dict)
    # when set, every task gets this reply regardless of capabilities
    fixed: Optional[Callable[[str], str]] = None


AGENT_PROFILES: Dict[str, AgentProfile] = {
    "design": AgentProfile(
        matched_label="Design suggestion",
        advice="I recommend focusing on user experience and visual hierarchy.",
        templates={
            "color_schemes": _color_schemes,
            "layout_suggestions": _layout_suggestions,
            "component_generation": _component_generation,
        },
    ),
    "development": AgentProfile(
        matched_label="Development solution",
        advice="I recommend following React best practices and maintaining clean, readable code.",
        templates={
            "react_components": _react_components,
            "styling": _styling,
            "api_integration": _api_integration,
        },
    ),
    "content": AgentProfile(
        matched_label="Content suggestion",
        advice="I recommend focusing on your audience's needs and maintaining a consistent brand voice.",
        templates={
            "copywriting": _copywriting,
            "seo_optimization": _seo_optimization,
            "content_strategy": _content_strategy,
        },
    ),
    "analysis": AgentProfile(matched_label="Analysis", advice="", fixed=_analysis),
}


def match_capability(capabilities: List[str], task: str) -> Optional[str]:
    """First capability whose keyword (or its singular form) occurs in the task text."""
    text = task.lower()
    for capability in capabilities:
        keyword = capability_keyword(capability)
        singular = keyword[:-1] if keyword.endswith("s") else keyword
        if keyword in text or (singular and singular in text):
            return capability
    return None


def compose_response(agent_type: str, agent_name: str, capabilities: List[str], task: str) -> str:
    profile = AGENT_PROFILES.get(agent_type)
    if profile is None:
        return (
            f"{agent_name}: I can help with {', '.join(capabilities)}. "
            f'For "{task}", I recommend considering the context and requirements carefully.'
        )
    if profile.fixed is not None:
        return profile.fixed(task)

    capability = match_capability(capabilities, task)
    if capability is not None:
        template = profile.templates.get(capability)
        if template is None:
            return f"{profile.matched_label}: {task}"
        return template(task)

    return f'{agent_name}: I can help with {describe_capabilities(capabilities)}. For "{task}", {profile.advice}'


@dataclass
class ExecutionResult:
    execution_id: str
    agent: dict
    result: str
    status: str
    timestamp: str

    def to_dict(self):
        return {
            "execution_id": self.execution_id,
            "agent": self.agent,
            "result": self.result,
            "status": self.status,
            "timestamp": self.timestamp,
        }


class AgentResponder:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def list_agents(self) -> List[dict]:
        with self.session_factory() as db:
            agents = db.query(models.Agent).filter(models.Agent.status == "active").all()
            return [agent.to_dict() for agent in agents]

    def get_agent(self, agent_id: str) -> dict:
        with self.session_factory() as db:
            return self._load_agent(db, agent_id).to_dict()

    def _load_agent(self, db, agent_id: str) -> models.Agent:
        agent = (
            db.query(models.Agent)
            .filter(models.Agent.id == agent_id, models.Agent.status == "active")
            .first()
        )
        if agent is None:
            raise NotFoundError("Agent not found")
        return agent

    def start(self, agent_id: str, task: str, context: Optional[dict], user_id: str,
              project_id: Optional[str] = None) -> str:
        """Validate the request and insert the pending execution row. Returns its id."""
        if not task or not task.strip():
            raise ValidationError("Task is required")
        with self.session_factory() as db:
            self._load_agent(db, agent_id)
            execution = models.Execution(
                agent_id=agent_id,
                user_id=user_id,
                project_id=project_id,
                task=task,
                context=context or {},
                status="pending",
            )
            db.add(execution)
            db.commit()
            logger.info(f"Execution {execution.id} started for agent {agent_id} by user {user_id}")
            return execution.id

    def finish(self, execution_id: str) -> ExecutionResult:
        """Produce the reply for a pending execution and record the outcome."""
        with self.session_factory() as db:
            execution = db.query(models.Execution).filter(models.Execution.id == execution_id).first()
            if execution is None:
                raise NotFoundError("Execution not found")
            if execution.status != "pending":
                raise ValidationError(f"Execution already {execution.status}")
            agent = execution.agent
            try:
                result = compose_response(agent.type, agent.name, agent.capabilities or [], execution.task)
            except Exception as e:
                logger.error(f"Execution {execution_id} failed: {e}")
                execution.result = str(e)
                execution.status = "failed"
                execution.completed_at = models.utcnow()
                db.commit()
                raise InternalError(str(e))

            execution.result = result
            execution.status = "completed"
            execution.completed_at = models.utcnow()
            db.commit()
            logger.info(f"Execution {execution_id} completed")
            return ExecutionResult(
                execution_id=execution_id,
                agent=agent.to_dict(),
                result=result,
                status="completed",
                timestamp=datetime.now(timezone.utc).isoformat(),
            )

    def fail(self, execution_id: str, message: str):
        with self.session_factory() as db:
            execution = db.query(models.Execution).filter(models.Execution.id == execution_id).first()
            if execution is None or execution.status != "pending":
                return
            execution.result = message
            execution.status = "failed"
            execution.completed_at = models.utcnow()
            db.commit()
            logger.warning(f"Execution {execution_id} failed: {message}")

    def execute(self, agent_id: str, task: str, context: Optional[dict], user_id: str,
                project_id: Optional[str] = None) -> ExecutionResult:
        execution_id = self.start(agent_id, task, context, user_id, project_id)
        return self.finish(execution_id)

    def execution_history(self, user_id: str, project_id: Optional[str] = None, limit: int = 50) -> List[dict]:
        with self.session_factory() as db:
            query = db.query(models.Execution).filter(models.Execution.user_id == user_id)
            if project_id:
                query = query.filter(models.Execution.project_id == project_id)
            rows = query.order_by(models.Execution.created_at.desc()).limit(limit).all()
            return [row.to_dict() for row in rows]

    def agent_stats(self, agent_id: str) -> dict:
        with self.session_factory() as db:
            self._load_agent(db, agent_id)
            total, successful, failed = (
                db.query(
                    func.count(models.Execution.id),
                    func.sum(case((models.Execution.status == "completed", 1), else_=0)),
                    func.sum(case((models.Execution.status == "failed", 1), else_=0)),
                )
                .filter(models.Execution.agent_id == agent_id)
                .one()
            )
            finished = (
                db.query(models.Execution.created_at, models.Execution.completed_at)
                .filter(models.Execution.agent_id == agent_id, models.Execution.completed_at.isnot(None))
                .all()
            )
            durations = [(done - created).total_seconds() for created, done in finished if created]
            return {
                "total_executions": total or 0,
                "successful_executions": successful or 0,
                "failed_executions": failed or 0,
                "avg_processing_time_seconds": sum(durations) / len(durations) if durations else None,
            }
