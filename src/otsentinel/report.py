from __future__ import annotations

import json
import re
from pathlib import Path
from typing import Optional, Tuple

from jinja2 import Environment, FileSystemLoader, select_autoescape
import importlib.resources as pkg_resources

from .models import ScanReport, utcnow


TEMPLATE_NAME = "scan_report.html.j2"

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def render_report(report: ScanReport, template_dir: Optional[Path] = None) -> str:
    if template_dir and (template_dir / TEMPLATE_NAME).exists():
        loader = FileSystemLoader(str(template_dir))
    else:
        # Fallback to packaged resource
        with pkg_resources.as_file(pkg_resources.files("otsentinel.resources")) as p:
            loader = FileSystemLoader(str(p))
    env = Environment(
        loader=loader,
        autoescape=select_autoescape(["html", "xml", "j2"]),
        trim_blocks=True,
        lstrip_blocks=True,
    )
    tmpl = env.get_template(TEMPLATE_NAME)
    return tmpl.render(
        generated_at=utcnow().isoformat(),
        report=report,
        counts=report.counts(),
    )


def report_stem(report: ScanReport) -> str:
    target = _UNSAFE.sub("_", report.target).strip("_") or "target"
    return f"{target}-scan-{report.finished_at.strftime('%Y%m%d-%H%M%S')}"


def write_report(outdir: Path, report: ScanReport, template_dir: Optional[Path] = None) -> Tuple[Path, Path]:
    """Write <target>-scan-<timestamp>.html and .json into outdir; returns (html_path, json_path)."""
    outdir.mkdir(parents=True, exist_ok=True)
    stem = report_stem(report)
    html_path = outdir / f"{stem}.html"
    json_path = outdir / f"{stem}.json"
    html_path.write_text(render_report(report, template_dir), encoding="utf-8")
    json_path.write_text(json.dumps(report.to_dict(), indent=2), encoding="utf-8")
    return html_path, json_path
