# src/utils/report_utils.py
"""
Helpers for secret-scan reports: {"findings": [...], "summary": {...}}.
"""
import copy


def detector_tags(findings):
    """
    Unique detector types in first-seen order.
    """
    tags = []
    for finding in findings:
        tag = finding.get("detector_type")
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def build_summary(findings, scanned_files=None, scanned_commits=None, scan_duration=0):
    if scanned_files is None:
        scanned_files = len({f.get("source", {}).get("file") for f in findings if f.get("source", {}).get("file")})
    if scanned_commits is None:
        scanned_commits = len({f.get("source", {}).get("commit") for f in findings if f.get("source", {}).get("commit")})
    return {
        "total_findings": len(findings),
        "verified_findings": sum(1 for f in findings if f.get("verified")),
        "detector_types": detector_tags(findings),
        "scan_duration": scan_duration,
        "scanned_files": scanned_files,
        "scanned_commits": scanned_commits,
    }


def build_report(findings, **summary_fields):
    return {"findings": list(findings), "summary": build_summary(findings, **summary_fields)}


def filter_verified_findings(report):
    """
    Copy of the report keeping only verified findings, with the counts recomputed from what is left.
    """
    filtered = copy.deepcopy(report)
    findings = [f for f in filtered.get("findings", []) if f.get("verified")]
    summary = filtered.get("summary") or {}
    filtered["findings"] = findings
    filtered["summary"] = {
        **summary,
        "total_findings": len(findings),
        "verified_findings": len(findings),
        "detector_types": detector_tags(findings),
    }
    return filtered


def count_findings(report):
    findings = (report or {}).get("findings") or []
    return len(findings), sum(1 for f in findings if f.get("verified"))
