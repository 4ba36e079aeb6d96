"""
Ledgerflow — Growth Stage

Heuristic business insights over the trailing 90 days of operations, the
user's companies and clients. Every insight is
{type, title, description, impact, actionable, suggested_actions}.

Heuristics:
  margin_optimization — profit margin < 20%
  growth_opportunity  — profit margin > 40%
  client_acquisition  — clients exist but none added in 30 days
  client_growth       — ≥3 clients added in 30 days
  diversification     — one category > 70% of income
  cost_optimization   — one category > 40% of expenses
  scaling             — exactly one company and income > 10,000
  status              — neutral fallback so the list is never empty
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta

from ledgerflow import db
from ledgerflow.db import _n
from ledgerflow.stages import StageContext

logger = logging.getLogger(__name__)

CONTENT_EVENT_TYPES = ("content.generate", "marketing.campaign")


def _insight(type_, title, description, impact, actions=None) -> dict:
    return {"type": type_, "title": title, "description": description, "impact": impact,
            "actionable": bool(actions), "suggested_actions": actions or []}


def _by_category(ops: list) -> dict:
    totals = defaultdict(float)
    for op in ops:
        totals[op.get("category") or "uncategorized"] += _n(op.get("amount"))
    return totals


def generate_insights(operations: list, companies: list, clients: list, now: datetime = None) -> list:
    now = now or datetime.now()
    insights = []
    income_ops = [o for o in operations if o.get("operation_type") == "income"]
    expense_ops = [o for o in operations if o.get("operation_type") == "expense"]
    total_income = sum(_n(o.get("amount")) for o in income_ops)
    total_expenses = sum(_n(o.get("amount")) for o in expense_ops)
    margin = (total_income - total_expenses) / total_income * 100 if total_income > 0 else 0

    # ── 1. PROFIT MARGIN ──
    if margin < 20:
        insights.append(_insight(
            "margin_optimization", "Low Profit Margin Alert",
            f"Your current profit margin is {margin:.1f}%. Industry standard is 20-30%.", "high",
            ["Review your pricing strategy", "Identify top 3 expense categories to optimize",
             "Consider value-added services to increase revenue"]))
    elif margin > 40:
        insights.append(_insight(
            "growth_opportunity", "Strong Margins - Investment Opportunity",
            f"Your {margin:.1f}% margin creates room for growth investment.", "high",
            ["Invest in marketing to acquire more clients", "Expand service offerings",
             "Hire additional team members"]))

    # ── 2. CLIENT ACQUISITION ──
    cutoff = (now - timedelta(days=30)).isoformat()
    recent_clients = [c for c in clients if (c.get("created_at") or "") >= cutoff]
    if clients and not recent_clients:
        insights.append(_insight(
            "client_acquisition", "Client Acquisition Stalled",
            "No new clients in the last 30 days. Consider ramping up marketing efforts.", "medium",
            ["Launch a referral program", "Increase social media presence", "Reach out to past leads"]))
    elif len(recent_clients) >= 3:
        insights.append(_insight(
            "client_growth", "Strong Client Acquisition",
            f"{len(recent_clients)} new clients in the last 30 days. Keep the momentum!", "high",
            ["Ask for testimonials and reviews", "Implement a customer success program",
             "Upsell additional services"]))

    # ── 3. REVENUE CONCENTRATION ──
    if income_ops and total_income > 0:
        top_cat, top_amt = max(_by_category(income_ops).items(), key=lambda kv: kv[1])
        if top_amt / total_income > 0.7:
            insights.append(_insight(
                "diversification", "Revenue Concentration Risk",
                f"{top_amt / total_income * 100:.0f}% of revenue comes from {top_cat}. Consider diversifying.",
                "medium", ["Develop complementary service offerings", "Target new market segments",
                           "Create passive income streams"]))

    # ── 4. EXPENSE CONCENTRATION ──
    if expense_ops and total_expenses > 0:
        top_cat, top_amt = max(_by_category(expense_ops).items(), key=lambda kv: kv[1])
        pct = top_amt / total_expenses * 100
        if pct > 40:
            insights.append(_insight(
                "cost_optimization", "Major Expense Category",
                f"{top_cat} represents {pct:.0f}% of total expenses.", "medium",
                [f"Review {top_cat} contracts for better rates", "Explore alternative vendors",
                 "Implement cost tracking for this category"]))

    # ── 5. SCALING ──
    if len(companies) == 1 and total_income > 10000:
        insights.append(_insight(
            "scaling", "Scaling Opportunity",
            "Your single company is performing well. Consider expanding your ecosystem.", "high",
            ["Evaluate opportunities for a satellite company", "Consider geographic expansion",
             "Explore strategic partnerships"]))

    if not insights:
        insights.append(_insight(
            "status", "Business Health Check",
            "Your business metrics are within normal ranges. Keep monitoring key indicators.", "low"))
    return insights


def content_suggestions(payload: dict) -> dict:
    """Templated content calendar, carousel, captions and hashtags."""
    topic = payload.get("topic") or "business growth"
    platform = payload.get("platform") or "linkedin"
    tone = payload.get("tone") or "professional"
    return {
        "topic": topic, "platform": platform, "tone": tone,
        "content_calendar": [
            {"day": "Monday", "type": "Educational", "topic": f"5 Tips for {topic}", "format": "Carousel"},
            {"day": "Wednesday", "type": "Case Study", "topic": "Client Success Story", "format": "Single Image + Caption"},
            {"day": "Friday", "type": "Engagement", "topic": "Industry Poll / Question", "format": "Text Post"},
        ],
        "carousel_script": {"slides": [
            {"slide": 1, "content": f"The Ultimate Guide to {topic}"},
            {"slide": 2, "content": "Problem: What challenges do you face?"},
            {"slide": 3, "content": "Solution: Here's what works"},
            {"slide": 4, "content": "Step 1: [Actionable tip]"},
            {"slide": 5, "content": "Step 2: [Actionable tip]"},
            {"slide": 6, "content": "Step 3: [Actionable tip]"},
            {"slide": 7, "content": "Results: What to expect"},
            {"slide": 8, "content": "CTA: Ready to start? Contact us!"},
        ]},
        "caption_templates": [
            f"{topic} doesn't have to be complicated.\n\nHere are 3 things I learned:\n\n"
            f"1. [Insight]\n2. [Insight]\n3. [Insight]\n\nWhat's your biggest challenge with {topic}?",
            f"I used to struggle with {topic}.\n\nThen I discovered this:\n\n[Key insight]\n\n"
            f"The result? [Outcome]\n\nDM me if you want to learn more.",
        ],
        "hashtag_suggestions": ["#" + "".join(topic.split()), "#BusinessGrowth", "#Entrepreneurship",
                                "#SmallBusiness", "#BusinessTips"],
        "best_posting_times": {platform: ["9:00 AM", "12:00 PM", "5:00 PM"]},
    }


def wants_content(event_type: str, payload: dict) -> bool:
    return event_type in CONTENT_EVENT_TYPES or any(payload.get(k) for k in ("topic", "platform", "tone"))


def analyze(user_id: str, event_type: str = "growth.analyze", payload: dict = None,
            now: datetime = None) -> dict:
    now = now or datetime.now()
    payload = payload or {}
    since = (now - timedelta(days=90)).date().isoformat()
    operations = db.find("master_operations", user_id=user_id,
                         where=lambda op: (op.get("transaction_date") or "") >= since)
    companies = db.find("companies", user_id=user_id)
    clients = db.find("company_clients", user_id=user_id)

    insights = generate_insights(operations, companies, clients, now)
    result = {"insights": insights, "content_suggestions": None, "analysis_period": "Last 90 days"}
    if wants_content(event_type, payload):
        result["content_suggestions"] = content_suggestions(payload)
    logger.info("[Growth] %s: %d insights from %d operations", user_id, len(insights), len(operations))
    return result


def run(ctx: StageContext) -> dict:
    result = analyze(ctx.user_id, ctx.event_type, ctx.payload)
    result["_audit"] = {"action_type": "analyze_growth",
                        "input_data": {"request_type": ctx.event_type},
                        "confidence_score": 85}
    return result
