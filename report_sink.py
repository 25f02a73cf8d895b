"""
Report Sink
===========
Exports entity or diff records to CSV / JSON / HTML and imports previously
exported CSV / JSON files back as baseline records.

Export -> import must round-trip: the imported records carry exactly the same
field names and string values as the live records they were written from.
"""

import csv
import html
import io
import json
import logging
import os
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from entities import DOMAINS, DIFF_FIELDS, diff_to_record, software_identity

logger = logging.getLogger("inventory_audit.report")

EXPORT_FORMATS = ("csv", "json", "html")


class BaselineError(ValueError):
    """A baseline file could not be parsed into records"""


def _cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "True" if value else "False"
    return str(value)


def _rows(records: Iterable[Mapping[str, Any]], fields: Sequence[str]) -> List[Dict[str, str]]:
    return [{f: _cell(r.get(f)) for f in fields} for r in records]


# =============================================================================
# EXPORT
# =============================================================================

def to_csv(records: Iterable[Mapping[str, Any]], fields: Sequence[str]) -> str:
    """One row per record, header = field names"""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=list(fields), quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writeheader()
    for row in _rows(records, fields):
        writer.writerow(row)
    return output.getvalue()


def to_json(records: Iterable[Mapping[str, Any]], fields: Sequence[str], pretty: bool = True) -> str:
    """Array of objects with the same fields as the CSV export"""
    rows = _rows(records, fields)
    if pretty:
        return json.dumps(rows, indent=2, ensure_ascii=False)
    return json.dumps(rows, ensure_ascii=False)


_HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ font-family: Segoe UI, sans-serif; font-size: 13px; }}
table {{ border-collapse: collapse; width: 100%; }}
th, td {{ border: 1px solid #ccc; padding: 4px 6px; text-align: left; }}
th {{ background: #eee; cursor: pointer; }}
tr.new, tr.added {{ background: #e6ffe6; }}
tr.updated, tr.changed {{ background: #fff8e0; }}
tr.removed {{ background: #ffe6e6; }}
</style>
</head>
<body>
<h2>{title}</h2>
<p>Generated {generated} &middot; {count} rows</p>
<input id="filter" type="text" placeholder="Filter..." onkeyup="filterRows()">
<table id="report">
<thead><tr>{header}</tr></thead>
<tbody>
{body}
</tbody>
</table>
<script>
function filterRows() {{
  var q = document.getElementById('filter').value.toLowerCase();
  document.querySelectorAll('#report tbody tr').forEach(function (tr) {{
    tr.style.display = tr.textContent.toLowerCase().indexOf(q) >= 0 ? '' : 'none';
  }});
}}
document.querySelectorAll('#report th').forEach(function (th, col) {{
  th.addEventListener('click', function () {{
    var tbody = document.querySelector('#report tbody');
    var rows = Array.from(tbody.rows);
    var asc = th.dataset.asc !== 'true';
    rows.sort(function (a, b) {{
      var x = a.cells[col].textContent, y = b.cells[col].textContent;
      return asc ? x.localeCompare(y) : y.localeCompare(x);
    }});
    th.dataset.asc = asc;
    rows.forEach(function (r) {{ tbody.appendChild(r); }});
  }});
}});
</script>
</body>
</html>
"""


def _row_class(row: Mapping[str, str]) -> str:
    status = row.get("ChangeStatus") or row.get("ChangeType") or ""
    return status.strip().lower()


def to_html(
    records: Iterable[Mapping[str, Any]],
    fields: Sequence[str],
    title: str = "Inventory Report",
) -> str:
    """Static table with client-side filter/sort; rows tagged by change status"""
    rows = _rows(records, fields)
    header = "".join(f"<th>{html.escape(f)}</th>" for f in fields)
    lines = []
    for row in rows:
        css = _row_class(row)
        cls = f' class="{html.escape(css)}"' if css else ""
        cells = "".join(f"<td>{html.escape(row[f])}</td>" for f in fields)
        lines.append(f"<tr{cls}>{cells}</tr>")
    return _HTML_TEMPLATE.format(
        title=html.escape(title),
        generated=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        count=len(rows),
        header=header,
        body="\n".join(lines),
    )


def render(
    records: Iterable[Mapping[str, Any]],
    fields: Sequence[str],
    fmt: str,
    title: str = "Inventory Report",
) -> str:
    fmt = fmt.lower()
    if fmt == "csv":
        return to_csv(records, fields)
    if fmt == "json":
        return to_json(records, fields)
    if fmt == "html":
        return to_html(records, fields, title)
    raise ValueError(f"Unsupported format: {fmt}")


def export_records(
    records: Iterable[Mapping[str, Any]],
    fields: Sequence[str],
    fmt: str,
    output_file: str,
    title: str = "Inventory Report",
) -> int:
    """Write records to a file and return the row count"""
    records = list(records)
    content = render(records, fields, fmt, title)
    directory = os.path.dirname(os.path.abspath(output_file))
    os.makedirs(directory, exist_ok=True)
    with open(output_file, "w", encoding="utf-8", newline="") as f:
        f.write(content)
    logger.info("[EXPORT] Exported %d rows to %s (%s)", len(records), output_file, fmt)
    return len(records)


def export_domain(domain: str, entities: Iterable[Any], fmt: str, output_file: str) -> int:
    """Export dataclass entities of a domain using its field list"""
    domain_info = DOMAINS[domain]
    records = [domain_info["to_record"](e) for e in entities]
    return export_records(records, domain_info["fields"], fmt, output_file, title=f"{domain.title()} Inventory")


def export_diff(diffs: Iterable[Any], fmt: str, output_file: str) -> int:
    records = [diff_to_record(d) for d in diffs]
    return export_records(records, DIFF_FIELDS, fmt, output_file, title="Baseline Comparison")


# =============================================================================
# BASELINE IMPORT
# =============================================================================

def _read_csv(text: str, path: str) -> List[Dict[str, str]]:
    reader = csv.DictReader(io.StringIO(text))
    if not reader.fieldnames:
        raise BaselineError(f"Baseline has no header row: {path}")
    records = []
    for row in reader:
        records.append({k: (v if v is not None else "") for k, v in row.items() if k is not None})
    return records


def _read_json(text: str, path: str) -> List[Dict[str, str]]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise BaselineError(f"Baseline is not valid JSON ({e.msg} at line {e.lineno}): {path}")

    # Accept a wrapped document {"software": [...]} as well as a bare array
    if isinstance(data, dict):
        arrays = [v for v in data.values() if isinstance(v, list)]
        if len(arrays) != 1:
            raise BaselineError(f"Baseline JSON must be an array of objects: {path}")
        data = arrays[0]
    if not isinstance(data, list) or not all(isinstance(item, dict) for item in data):
        raise BaselineError(f"Baseline JSON must be an array of objects: {path}")

    return [{k: _cell(v) for k, v in item.items()} for item in data]


def load_baseline(path: str, domain: Optional[str] = None) -> List[Dict[str, str]]:
    """Parse an exported CSV/JSON file back into records.

    Raises:
        BaselineError: missing, empty, malformed, or lacking the domain key field
    """
    if not path or not os.path.isfile(path):
        raise BaselineError(f"Baseline file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8-sig", newline="") as f:
            text = f.read()
    except (OSError, UnicodeDecodeError) as e:
        raise BaselineError(f"Unable to read baseline {path}: {e}")

    if not text.strip():
        raise BaselineError(f"Baseline file is empty: {path}")

    ext = os.path.splitext(path)[1].lower()
    if ext == ".json":
        records = _read_json(text, path)
    elif ext == ".csv":
        try:
            records = _read_csv(text, path)
        except csv.Error as e:
            raise BaselineError(f"Baseline is not valid CSV ({e}): {path}")
    else:
        raise BaselineError(f"Unsupported baseline format '{ext}' (expected .csv or .json): {path}")

    if domain:
        records = _check_domain(records, domain, path)

    logger.info("[BASELINE_LOAD] Loaded %d records from %s", len(records), path)
    return records


def _check_domain(records: List[Dict[str, str]], domain: str, path: str) -> List[Dict[str, str]]:
    domain_info = DOMAINS.get(domain)
    if domain_info is None:
        raise BaselineError(f"Unknown domain: {domain}")
    key = domain_info["key"]

    if domain == "software":
        # Older exports may lack the derived identity column
        for record in records:
            if not record.get(key):
                if "Source" not in record or "Name" not in record:
                    raise BaselineError(f"Baseline is missing Source/Name columns: {path}")
                record[key] = software_identity(
                    record.get("Source", ""), record.get("UniqueId", ""), record.get("Name", "")
                )
    elif records and key not in records[0]:
        raise BaselineError(f"Baseline is missing the '{key}' column for {domain}: {path}")

    return records


def load_entities(path: str, domain: str) -> List[Any]:
    """Load a baseline and convert it into the domain's dataclasses"""
    from_record = DOMAINS[domain]["from_record"]
    return [from_record(r) for r in load_baseline(path, domain)]
