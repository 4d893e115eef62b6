"""Ready-made conversation workflows for sales and support teams."""

from __future__ import annotations

from typing import Callable, Dict, Optional

from .models import (
    ConditionNode,
    Edge,
    EndNode,
    InputNode,
    MessageNode,
    WorkflowDraft,
)


def _message(node_id: str, text: str, next_id: Optional[str] = None) -> MessageNode:
    return MessageNode(
        id=node_id,
        content={"text": text},
        next=[Edge(id=next_id)] if next_id else [],
    )


def _input(node_id: str, prompt: str, variable: str, next_id: str) -> InputNode:
    return InputNode(
        id=node_id,
        content={"prompt": prompt, "variable_name": variable},
        next=[Edge(id=next_id)],
    )


def welcome_template(name: Optional[str] = None, description: Optional[str] = None) -> WorkflowDraft:
    """Greet a new contact, ask their name and what they are looking for."""
    return WorkflowDraft(
        name=name or "Welcome flow",
        description=description or "Greets new customers and captures their interest",
        is_public=True,
        tags=["welcome", "starter"],
        start_node_id="welcome_msg",
        nodes=[
            _message(
                "welcome_msg",
                "Hello! I'm a virtual sales assistant. How can I help you today?",
                "input_name",
            ),
            _input("input_name", "What is your name?", "customer_name", "confirmation_msg"),
            _message(
                "confirmation_msg",
                "Nice to meet you, {{customer_name}}! I'm here to help with any "
                "question about our products and services.",
                "question_input",
            ),
            _input(
                "question_input",
                "Are you looking for a specific product today?",
                "interest",
                "final_msg",
            ),
            EndNode(
                id="final_msg",
                content={
                    "message": "Got it! One of our specialists will contact you about "
                    "{{interest}} shortly. Thanks for your interest!"
                },
            ),
        ],
    )


def prospecting_template(name: Optional[str] = None, description: Optional[str] = None) -> WorkflowDraft:
    """Qualify interest and collect contact details for a follow-up."""
    return WorkflowDraft(
        name=name or "Prospecting flow",
        description=description or "Qualifies prospects and schedules a follow-up",
        is_public=True,
        tags=["sales", "prospecting"],
        start_node_id="start",
        nodes=[
            _message("start", "Hi! Thanks for reaching out.", "input_name"),
            _input("input_name", "May I have your name?", "customer_name", "input_interest"),
            _input(
                "input_interest",
                "{{customer_name}}, would you like to hear about our solutions? (yes/no)",
                "initial_interest",
                "check_interest",
            ),
            ConditionNode(
                id="check_interest",
                next=[
                    Edge(id="product_info", condition="initial_interest == yes"),
                    Edge(id="product_info", condition="initial_interest == Yes"),
                    Edge(id="no_interest"),
                ],
            ),
            _message(
                "product_info",
                "Great! Our platform automates customer conversations end to end.",
                "input_email",
            ),
            _input("input_email", "What is the best email to reach you?", "email", "input_schedule"),
            _input(
                "input_schedule",
                "When would be a good time for a quick call?",
                "preferred_time",
                "end_scheduled",
            ),
            EndNode(
                id="end_scheduled",
                content={
                    "message": "Perfect, {{customer_name}}! We will email {{email}} to "
                    "confirm a call at {{preferred_time}}."
                },
            ),
            EndNode(
                id="no_interest",
                content={"message": "No problem, {{customer_name}}. We're here whenever you need us!"},
            ),
        ],
    )


def lead_qualification_template(
    name: Optional[str] = None, description: Optional[str] = None
) -> WorkflowDraft:
    """Score a lead by budget and route it to the matching sales queue."""
    return WorkflowDraft(
        name=name or "Lead qualification",
        description=description or "Collects company details and prioritizes by budget",
        is_public=True,
        tags=["sales", "qualification"],
        start_node_id="start",
        nodes=[
            _message("start", "Hi! Let's find the best plan for your team.", "input_name"),
            _input("input_name", "What is your name?", "customer_name", "input_company"),
            _input("input_company", "Which company do you work for?", "company", "input_role"),
            _input("input_role", "What is your role at {{company}}?", "role", "input_team_size"),
            _input(
                "input_team_size",
                "How many people are on your team?",
                "team_size",
                "input_budget",
            ),
            _input(
                "input_budget",
                "What is your monthly budget in USD?",
                "budget",
                "check_budget",
            ),
            ConditionNode(
                id="check_budget",
                next=[
                    Edge(id="high_priority", condition="budget >= 5000"),
                    Edge(id="medium_priority", condition="budget >= 1000"),
                    Edge(id="low_priority"),
                ],
            ),
            EndNode(
                id="high_priority",
                content={"message": "Thanks {{customer_name}}! A senior account executive will call you today."},
            ),
            EndNode(
                id="medium_priority",
                content={"message": "Thanks {{customer_name}}! Our sales team will contact you this week."},
            ),
            EndNode(
                id="low_priority",
                content={"message": "Thanks {{customer_name}}! We'll send you material about our starter plans."},
            ),
        ],
    )


def support_template(name: Optional[str] = None, description: Optional[str] = None) -> WorkflowDraft:
    """Triage a support request by problem type and urgency."""
    return WorkflowDraft(
        name=name or "Customer support",
        description=description or "Triages technical and billing requests",
        is_public=True,
        tags=["support"],
        start_node_id="start",
        nodes=[
            _message("start", "Hello! You've reached customer support.", "input_problem"),
            _input(
                "input_problem",
                "Is your issue technical or billing related? (technical/billing)",
                "problem_type",
                "route_problem",
            ),
            ConditionNode(
                id="route_problem",
                next=[
                    Edge(id="technical_msg", condition="problem_type == technical"),
                    Edge(id="billing_msg", condition="problem_type == billing"),
                    Edge(id="general_msg"),
                ],
            ),
            _message("technical_msg", "Our technical team will look into it.", "input_urgency"),
            _message("billing_msg", "Our billing team will look into it.", "input_urgency"),
            _message("general_msg", "We'll route your request to the right team.", "input_urgency"),
            _input(
                "input_urgency",
                "Is this blocking your work right now? (yes/no)",
                "urgent",
                "route_urgency",
            ),
            ConditionNode(
                id="route_urgency",
                next=[
                    Edge(id="high_urgency", condition="urgent == yes"),
                    Edge(id="high_urgency", condition="urgent == Yes"),
                    Edge(id="normal_urgency"),
                ],
            ),
            EndNode(
                id="high_urgency",
                content={"message": "Understood. An agent will reach out within the hour."},
            ),
            EndNode(
                id="normal_urgency",
                content={"message": "Thanks! We'll get back to you within one business day."},
            ),
        ],
    )


TEMPLATES: Dict[str, Callable[..., WorkflowDraft]] = {
    "welcome": welcome_template,
    "prospecting": prospecting_template,
    "lead_qualification": lead_qualification_template,
    "support": support_template,
}


def build_template(
    template: str, name: Optional[str] = None, description: Optional[str] = None
) -> WorkflowDraft:
    """Return a fresh draft of the named template."""
    try:
        factory = TEMPLATES[template]
    except KeyError:
        raise ValueError(
            f"Unknown template '{template}'. Available: {', '.join(sorted(TEMPLATES))}"
        ) from None
    return factory(name, description)
