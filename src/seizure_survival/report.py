"""Narrative analysis report in Markdown and Word.

``render_markdown`` turns the results of one pipeline run into a Markdown
document that links to the saved figures; ``markdown_to_docx`` converts
that document to ``.docx`` with python-docx, embedding the figures.

Example:
    >>> md_path, docx_path = write_report(results, "data/outputs/full/report")
"""
from __future__ import annotations
import logging
import math
import os
import re
from typing import Iterable, List, Optional, Tuple

import pandas as pd
from docx import Document
from docx.enum.style import WD_STYLE_TYPE
from docx.shared import Inches, Pt, RGBColor

from seizure_survival.timing import log_execution_time
from seizure_survival.utils import ensure_dir

logger = logging.getLogger("seizure_survival.report")

REPORT_TITLE = "Time to first seizure: immediate vs. deferred treatment"


# ============================================================================
# Markdown rendering
# ============================================================================

def _fmt(value, digits: int = 3) -> str:
    if value is None:
        return ""
    if isinstance(value, float):
        if math.isnan(value):
            return ""
        if math.isinf(value):
            return "not reached"
        if value != 0 and abs(value) < 10 ** -digits:
            return f"{value:.2e}"
        return f"{value:.{digits}f}"
    return str(value)


def markdown_table(df: pd.DataFrame, index: bool = True, digits: int = 3) -> str:
    """Render a DataFrame as a pipe table.

    Example:
        >>> print(markdown_table(pd.DataFrame({"n": [3]}, index=["a"])))
        |  | n |
        |---|---|
        | a | 3 |
    """
    frame = df.reset_index() if index else df
    if index and frame.columns[0] in ("index", None):
        frame = frame.rename(columns={frame.columns[0]: ""})
    header = "| " + " | ".join(str(c) for c in frame.columns) + " |"
    rule = "|" + "|".join("---" for _ in frame.columns) + "|"
    body = [
        "| " + " | ".join(_fmt(v, digits) for v in row) + " |"
        for row in frame.itertuples(index=False)
    ]
    return "\n".join([header, rule, *body])


def _figure(path: Optional[str], caption: str, report_dir: str) -> List[str]:
    if not path:
        return []
    rel = os.path.relpath(path, report_dir)
    return [f"![{caption}]({rel})", ""]


def _coefficients(fit) -> pd.DataFrame:
    coefs = fit.coefficients.copy()
    columns = ["param", "covariate", "coef", "se", "p"] if coefs["param"].nunique() > 1 \
        else ["covariate", "coef", "se", "p"]
    return coefs[columns]


def render_markdown(results, report_dir: str) -> str:
    """Build the narrative report for one analysis run.

    Args:
        results: AnalysisResults from ``pipeline.run_analysis``
        report_dir: Directory the Markdown file is written to (figure links
            are relative to it)

    Returns:
        Markdown text
    """
    cfg = results.config
    lines: List[str] = [f"# {REPORT_TITLE}", ""]
    if cfg.description:
        lines += [cfg.description, ""]

    lines += [
        "## Data", "",
        f"The dataset holds {results.n_subjects} randomised subjects, "
        f"{results.n_events} of whom had a first seizure during follow-up.",
        "",
        f"{results.eeg_inconsistent} records reported no EEG together with an abnormal "
        "EEG result; the abnormal result was taken as authoritative and the EEG "
        "flag set to yes.",
        "",
        f"{results.jointly_missing} records miss both the date of the first "
        "pre-randomisation seizure and the period since it. They are treated as "
        "missing at random and dropped from each model that uses these fields.",
        "",
        "### EEG records before correction", "",
        markdown_table(results.eeg_table), "",
    ]

    lines += ["## Descriptive summaries", ""]
    for name, table in results.frequency_tables.items():
        lines += [f"### {name}", "", markdown_table(table), ""]
    lines += ["### Covariate balance by arm", "",
              markdown_table(results.balance, index=False), ""]
    lines += _figure(results.figures.get("histograms"), "Covariate distributions", report_dir)

    km = results.km
    lines += [
        "## Kaplan-Meier estimates", "",
        markdown_table(results.outcome_summary), "",
        markdown_table(km.table), "",
        f"Log-rank test of equal survival across arms: chi-squared = "
        f"{km.test_statistic:.3f}, p = {_fmt(km.p_value, 4)}.",
        "",
    ]
    lines += _figure(results.figures.get("kaplan_meier"), "Kaplan-Meier curves by arm", report_dir)

    lines += ["## Initial models", "",
              "Every family was fitted to the full candidate covariate set.", "",
              markdown_table(results.criteria, index=False), ""]
    if results.failures:
        lines += ["The following fits failed and were left out:", ""]
        lines += [f"- {name}: {message}" for name, message in results.failures.items()]
        lines += [""]

    cox = results.initial_fits.get("cox")
    if cox is not None:
        lines += ["### Cox proportional hazards", "",
                  markdown_table(_coefficients(cox), index=False), ""]
    if results.ph_flags is not None:
        flagged = results.ph_flags.index[results.ph_flags["violation"]].tolist()
        lines += ["### Proportional hazards check", "",
                  markdown_table(results.ph_flags), ""]
        lines += [
            ("Schoenfeld residuals suggest time-varying effects for: "
             + ", ".join(flagged) + ".") if flagged
            else "No design column shows evidence against proportional hazards.",
            "",
        ]

    rsf = results.initial_fits.get("rsf")
    if rsf is not None:
        lines += ["### Random survival forest importance", "",
                  markdown_table(rsf.importance.to_frame()), ""]
        lines += _figure(results.figures.get("importance"), "Permutation importance", report_dir)

    lines += ["## Model comparison", ""]
    if len(results.aft_ranking):
        lines += ["Parametric accelerated failure time families ranked by AIC (lower is better).", "",
                  markdown_table(results.aft_ranking, index=False), ""]
    else:
        lines += ["No parametric accelerated failure time family was fitted on the initial "
                  "covariates.", ""]

    if cfg.final_spec is not None:
        selection_text = (f"The final model was configured with covariates "
                          f"{', '.join(results.retained_covariates)}.")
    else:
        selection_text = (
            f"Covariates retained by every selection method (significance at "
            f"alpha = {cfg.selection.alpha}, importance above "
            f"{cfg.selection.importance_threshold}) plus the forced covariates "
            f"{', '.join(cfg.selection.forced_covariates) or 'none'}: "
            f"{', '.join(results.retained_covariates)}."
        )
    lines += ["## Variable selection", "", selection_text, ""]

    final = results.final_fit
    lines += [
        f"## Final model: {final.name}", "",
        f"Family {final.family.value}, n = {final.n_obs}, events = {final.n_events}, "
        f"AIC = {_fmt(final.aic)}, concordance = {_fmt(final.concordance)}.",
        "",
        markdown_table(_coefficients(final), index=False), "",
    ]

    lines += [
        "## Predicted time to first seizure", "",
        "Median predicted days to first seizure with a band of two standard "
        "errors on the log-time scale.", "",
        markdown_table(results.median_predictions), "",
    ]
    lines += _figure(results.figures.get("quantiles"), "Predicted quantiles", report_dir)

    return "\n".join(lines).rstrip() + "\n"


# ============================================================================
# Word conversion
# ============================================================================

def setup_styles(doc):
    """Configure fonts and heading colours for the report."""
    normal = doc.styles["Normal"].font
    normal.name = "Calibri"
    normal.size = Pt(11)

    for level, size in ((1, 18), (2, 14), (3, 12)):
        font = doc.styles[f"Heading {level}"].font
        font.name = "Calibri"
        font.bold = True
        font.size = Pt(size)
        font.color.rgb = RGBColor(31, 73, 125)

    try:
        doc.styles["Code"]
    except KeyError:
        code = doc.styles.add_style("Code", WD_STYLE_TYPE.PARAGRAPH)
        code.font.name = "Consolas"
        code.font.size = Pt(9)
        code.paragraph_format.left_indent = Inches(0.5)


_HEADING = re.compile(r"^(#{1,6})\s+(.+)$")
_BULLET = re.compile(r"^\s*[-*+]\s+(.+)$")
_IMAGE = re.compile(r"^!\[(.*?)\]\((.+?)\)$")
_TABLE_RULE = re.compile(r"^\|[-:|\s]+\|$")


def parse_markdown_line(line: str) -> Tuple[str, object]:
    """Classify one Markdown line.

    Returns:
        Tuple (kind, payload) with kind one of heading, image, table,
        table_sep, bullet, blank, text
    """
    line = line.rstrip()
    if not line:
        return "blank", ""
    m = _HEADING.match(line)
    if m:
        return "heading", (len(m.group(1)), m.group(2))
    m = _IMAGE.match(line)
    if m:
        return "image", (m.group(1), m.group(2))
    if _TABLE_RULE.match(line):
        return "table_sep", ""
    if line.startswith("|"):
        return "table", line
    m = _BULLET.match(line)
    if m:
        return "bullet", m.group(1)
    return "text", line


def add_formatted_paragraph(doc, text: str, style_name: str = "Normal"):
    """Add a paragraph honouring ``**bold**`` and ``code`` spans."""
    para = doc.add_paragraph(style=style_name)
    for part in re.split(r"(\*\*.+?\*\*|`.+?`)", text):
        if not part:
            continue
        if part.startswith("**") and part.endswith("**"):
            para.add_run(part[2:-2]).bold = True
        elif part.startswith("`") and part.endswith("`"):
            run = para.add_run(part[1:-1])
            run.font.name = "Consolas"
        else:
            para.add_run(part)
    return para


def add_table(doc, table_lines: Iterable[str]):
    """Add a pipe table; the first row is the bold header."""
    rows = [[cell.strip() for cell in line.strip().strip("|").split("|")] for line in table_lines]
    if not rows:
        return None
    n_cols = len(rows[0])
    table = doc.add_table(rows=len(rows), cols=n_cols)
    table.style = "Table Grid"
    for i, row in enumerate(rows):
        for j, text in enumerate(row[:n_cols]):
            cell = table.rows[i].cells[j]
            cell.text = text
            if i == 0:
                for run in cell.paragraphs[0].runs:
                    run.bold = True
    return table


@log_execution_time(logger)
def markdown_to_docx(md_path: str, docx_path: str, title: str = REPORT_TITLE) -> str:
    """Convert the Markdown report to a Word document.

    Image links are resolved relative to the Markdown file; missing images
    are replaced by their caption.

    Returns:
        Path of the written document
    """
    with open(md_path, "r", encoding="utf-8") as f:
        lines = f.readlines()
    base_dir = os.path.dirname(os.path.abspath(md_path))

    doc = Document()
    setup_styles(doc)
    doc.core_properties.title = title

    table_buffer: List[str] = []

    def flush_table():
        if table_buffer:
            add_table(doc, table_buffer)
            table_buffer.clear()

    for line in lines:
        kind, payload = parse_markdown_line(line)
        if kind == "table":
            table_buffer.append(payload)
            continue
        if kind == "table_sep":
            continue
        flush_table()

        if kind == "heading":
            level, text = payload
            doc.add_heading(text, level=min(level, 3))
        elif kind == "image":
            caption, rel = payload
            path = os.path.join(base_dir, rel)
            if os.path.exists(path):
                doc.add_picture(path, width=Inches(6))
            else:
                logger.warning(f"Report image not found: {path}")
            doc.add_paragraph().add_run(caption).italic = True
        elif kind == "bullet":
            add_formatted_paragraph(doc, payload, "List Bullet")
        elif kind == "text":
            add_formatted_paragraph(doc, payload)
    flush_table()

    doc.save(docx_path)
    logger.info(f"Converted {md_path} -> {docx_path}")
    return docx_path


def write_report(results, report_dir: str, render_docx: bool = True) -> Tuple[str, Optional[str]]:
    """Write ``report.md`` (and ``report.docx``) to ``report_dir``.

    Returns:
        Tuple of (markdown path, docx path or None)
    """
    ensure_dir(report_dir)
    md_path = os.path.join(report_dir, "report.md")
    with open(md_path, "w", encoding="utf-8") as f:
        f.write(render_markdown(results, report_dir))
    logger.info(f"Report written to: {md_path}")

    docx_path = None
    if render_docx:
        docx_path = markdown_to_docx(md_path, os.path.join(report_dir, "report.docx"))
    return md_path, docx_path
