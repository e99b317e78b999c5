"""Stage, complete-plan and improvement-plan exports as JSON, Markdown, CSV and HTML."""
from __future__ import annotations

import csv
import html
import io
import json
import re
from typing import Any

from ventureclone.errors import AppError
from ventureclone.models import BusinessAnalysis
from ventureclone.utils import json_parse, utcnow_iso
from ventureclone.workflow import STAGE_NAMES, TOTAL_STAGES, stages_from_analysis

FORMATS = {
    "json": "application/json",
    "markdown": "text/markdown",
    "csv": "text/csv",
    "html": "text/html",
}

_EXTENSIONS = {"json": "json", "markdown": "md", "csv": "csv", "html": "html"}
IMPROVEMENT_FORMATS = ("json", "html")
_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")
_SLUG_RE = re.compile(r"[^a-z0-9]", re.IGNORECASE)

_HTML_STYLE = """\
body { font-family: -apple-system, 'Segoe UI', Roboto, Arial, sans-serif; line-height: 1.6;
       color: #333; max-width: 900px; margin: 0 auto; padding: 40px 20px; }
.header { border-bottom: 2px solid #667eea; margin-bottom: 30px; }
.stage { padding: 20px 0; border-bottom: 1px solid #e5e7eb; }
.stage h2 { color: #667eea; }
.footer { text-align: center; margin-top: 40px; color: #6b7280; font-size: 0.9em; }"""

FOOTER = ("This document contains AI-generated analysis and recommendations. "
          "Please validate all information independently.")


def humanize(key: str) -> str:
    """``effortScore`` -> ``Effort Score``."""
    return _CAMEL_RE.sub(" ", key).replace("_", " ").strip().title()


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Yes" if value else "No"
    return str(value)


def filename_for(business: str, suffix: str, fmt: str) -> str:
    name = _SLUG_RE.sub("-", business or "Business")
    return f"{name}-{_SLUG_RE.sub('-', suffix)}.{_EXTENSIONS[fmt]}"


def check_format(fmt: str) -> str:
    fmt = (fmt or "json").lower()
    if fmt not in FORMATS:
        raise AppError.bad_request(
            f"Invalid export format. Must be one of: {', '.join(FORMATS)}.")
    return fmt


# ---------------------------------------------------------------------------
# Data assembly
# ---------------------------------------------------------------------------


def stage_export_data(record: BusinessAnalysis, stage_number: int) -> dict[str, Any]:
    if not 1 <= stage_number <= TOTAL_STAGES:
        raise AppError.bad_request(f"Invalid stage number. Must be between 1 and {TOTAL_STAGES}.")
    stage = stages_from_analysis(record).get(stage_number)
    if not stage:
        raise AppError(f"Stage {stage_number} not found", 404, "NOT_FOUND",
                       "Generate this stage before exporting it.")
    return {"stageName": STAGE_NAMES[stage_number], **stage}


def complete_plan_data(record: BusinessAnalysis) -> dict[str, Any]:
    """Everything known about an analysis, keyed ``stage1``..``stage6``."""
    stages = stages_from_analysis(record)
    plan: dict[str, Any] = {
        "metadata": {
            "businessName": record.business_model or "Business Analysis",
            "url": record.url,
            "generatedAt": utcnow_iso(),
            "analysisId": record.id,
        },
        "stage1": {
            "name": STAGE_NAMES[1],
            "summary": record.summary,
            "url": record.url,
            "overallScore": record.overall_score,
            "structured": json_parse(record.structured_json, {}),
            "clonabilityScore": json_parse(record.clonability_json, None),
            "firstPartyData": json_parse(record.first_party_json, None),
            "improvements": json_parse(record.improvements_json, None),
            "businessModel": record.business_model,
            "revenueStream": record.revenue_stream,
            "targetMarket": record.target_market,
        },
    }
    for number in range(2, TOTAL_STAGES + 1):
        stage = stages.get(number)
        if stage and stage.get("status") == "completed":
            plan[f"stage{number}"] = {"name": STAGE_NAMES[number], **(stage.get("content") or {})}
    return plan


# ---------------------------------------------------------------------------
# Renderers
# ---------------------------------------------------------------------------


def to_json(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False)


def _markdown_lines(value: Any, level: int) -> list[str]:
    if isinstance(value, dict):
        lines: list[str] = []
        for key, item in value.items():
            if item is None or item == [] or item == {}:
                continue
            if isinstance(item, (dict, list)):
                lines += ["", f"{'#' * min(level, 6)} {humanize(key)}", ""]
                lines += _markdown_lines(item, level + 1)
            else:
                lines.append(f"- **{humanize(key)}:** {_scalar(item)}")
        return lines
    if isinstance(value, list):
        lines = []
        for item in value:
            if isinstance(item, dict):
                pairs = [f"{humanize(k)}: {_inline(v)}" for k, v in item.items() if v not in (None, "")]
                lines.append(f"- {'; '.join(pairs)}")
            else:
                lines.append(f"- {_scalar(item)}")
        return lines
    return [_scalar(value)]


def _inline(value: Any) -> str:
    if isinstance(value, list):
        return ", ".join(_inline(v) for v in value)
    if isinstance(value, dict):
        return ", ".join(f"{humanize(k)} {_inline(v)}" for k, v in value.items())
    return _scalar(value)


def to_markdown(title: str, sections: dict[str, Any], subtitle: str | None = None) -> str:
    lines = [f"# {title}"]
    if subtitle:
        lines += ["", subtitle]
    for heading, content in sections.items():
        lines += ["", f"## {heading}"]
        lines += _markdown_lines(content, 3)
    lines += ["", "---", "", f"_{FOOTER}_", ""]
    return "\n".join(lines)


def flatten(data: Any, prefix: str = "") -> dict[str, str]:
    """Nested dicts become dotted keys; lists are joined with ``; ``."""
    out: dict[str, str] = {}
    if not isinstance(data, dict):
        return {prefix or "value": _scalar(data)}
    for key, value in data.items():
        name = f"{prefix}.{key}" if prefix else key
        if value is None:
            out[name] = ""
        elif isinstance(value, list):
            out[name] = "; ".join(
                json.dumps(v, ensure_ascii=False) if isinstance(v, (dict, list)) else _scalar(v)
                for v in value
            )
        elif isinstance(value, dict):
            out.update(flatten(value, name))
        else:
            out[name] = _scalar(value)
    return out


def to_csv(rows: list[dict[str, Any]]) -> str:
    """One CSV row per item, with the union of flattened keys as the header."""
    flat = [flatten(row) for row in rows]
    headers: list[str] = []
    for row in flat:
        headers += [k for k in row if k not in headers]
    buf = io.StringIO()
    writer = csv.DictWriter(buf, fieldnames=headers, restval="", lineterminator="\n")
    writer.writeheader()
    writer.writerows(flat)
    return buf.getvalue()


def _html_value(value: Any) -> str:
    if isinstance(value, dict):
        items = "".join(
            f"<li><strong>{html.escape(humanize(k))}:</strong> {_html_value(v)}</li>"
            for k, v in value.items() if v not in (None, "", [], {})
        )
        return f"<ul>{items}</ul>"
    if isinstance(value, list):
        return "<ul>" + "".join(f"<li>{_html_value(v)}</li>" for v in value) + "</ul>"
    return html.escape(_scalar(value))


def to_html(title: str, sections: dict[str, Any], subtitle: str | None = None) -> str:
    body = [f'<div class="header"><h1>{html.escape(title)}</h1>']
    if subtitle:
        body.append(f"<p>{html.escape(subtitle)}</p>")
    body.append("</div>")
    for heading, content in sections.items():
        body.append(f'<div class="stage"><h2>{html.escape(heading)}</h2>{_html_value(content)}</div>')
    body.append(f'<div class="footer"><p>Generated by VentureClone</p><p>{html.escape(FOOTER)}</p></div>')
    return (
        "<!DOCTYPE html>\n<html lang=\"en\">\n<head>\n<meta charset=\"UTF-8\">\n"
        f"<title>{html.escape(title)}</title>\n<style>\n{_HTML_STYLE}\n</style>\n</head>\n"
        f"<body>\n{chr(10).join(body)}\n</body>\n</html>\n"
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def export_stage(record: BusinessAnalysis, stage_number: int, fmt: str) -> tuple[str, str, str]:
    """Return ``(body, media_type, filename)`` for one stage."""
    fmt = check_format(fmt)
    data = stage_export_data(record, stage_number)
    name = data["stageName"]
    filename = filename_for(record.business_model, f"Stage-{stage_number}-{name}", fmt)
    title = f"Stage {stage_number}: {name}"
    subtitle = f"{record.business_model or record.url} ({record.url})"
    content = data.get("content") or {}

    if fmt == "json":
        body = to_json(data)
    elif fmt == "csv":
        body = to_csv([{"stageNumber": stage_number, "stageName": name,
                        "status": data.get("status"), **content}])
    elif fmt == "markdown":
        body = to_markdown(title, {name: content}, subtitle)
    else:
        body = to_html(title, {name: content}, subtitle)
    return body, FORMATS[fmt], filename


def export_complete_plan(record: BusinessAnalysis, fmt: str) -> tuple[str, str, str]:
    fmt = check_format(fmt)
    plan = complete_plan_data(record)
    meta = plan["metadata"]
    filename = filename_for(meta["businessName"], "Complete-Plan", fmt)
    sections = {
        f"Stage {n}: {plan[f'stage{n}']['name']}":
            {k: v for k, v in plan[f"stage{n}"].items() if k != "name"}
        for n in range(1, TOTAL_STAGES + 1) if f"stage{n}" in plan
    }
    title = f"{meta['businessName']} - Complete Business Plan"

    if fmt == "json":
        body = to_json(plan)
    elif fmt == "csv":
        rows = [{"stage": heading, **content} for heading, content in sections.items()]
        body = to_csv(rows)
    elif fmt == "markdown":
        body = to_markdown(title, sections, meta["url"])
    else:
        body = to_html(title, sections, meta["url"])
    return body, FORMATS[fmt], filename


def export_improvements(record: BusinessAnalysis, fmt: str) -> tuple[str, str, str]:
    """The stored twists and 7-day plan as JSON or HTML."""
    fmt = (fmt or "json").lower()
    if fmt not in IMPROVEMENT_FORMATS:
        raise AppError.bad_request(
            f"Invalid export format. Must be one of: {', '.join(IMPROVEMENT_FORMATS)}.")
    improvements = json_parse(record.improvements_json, None)
    if not improvements:
        raise AppError("No improvements found", 404, "NOT_FOUND",
                       "No improvement plan found for this analysis. Generate improvements first.")
    filename = filename_for(record.business_model, "Improvement-Plan", fmt)
    if fmt == "json":
        return to_json(improvements), FORMATS[fmt], filename

    sections = {
        "Strategic Twists": improvements.get("twists") or [],
        "7-Day Plan": {
            f"Day {day.get('day')}": day.get("tasks") or []
            for day in improvements.get("sevenDayPlan") or []
        },
    }
    title = f"{record.business_model or 'Business'} - Improvement Plan"
    return to_html(title, sections, record.url), FORMATS[fmt], filename
