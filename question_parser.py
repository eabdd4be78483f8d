"""Turn uploaded question files (CSV, plain text, Excel) into question rows."""
import io
import logging
import numbers
import re

import pandas as pd

logger = logging.getLogger(__name__)

OPTION_KEYS = ("optionA", "optionB", "optionC", "optionD")
REQUIRED_KEYS = ("questionText",) + OPTION_KEYS + ("correctAnswer",)

# header -> record key; the snake_case names are accepted as fallbacks
COLUMN_ALIASES = {
    "questionText": ("Question", "question"),
    "optionA": ("Option A", "option_a"),
    "optionB": ("Option B", "option_b"),
    "optionC": ("Option C", "option_c"),
    "optionD": ("Option D", "option_d"),
    "correctAnswer": ("Correct Answer", "correct_answer"),
    "marks": ("Marks", "marks"),
    "timeLimit": ("Time Limit", "time_limit"),
}

SPREADSHEET_SUFFIXES = (".xlsx",)

LEADING_INT = re.compile(r"^\s*([+-]?\d+)")
BLANK_LINES = re.compile(r"\n[ \t]*\n")

TEXT_PREFIXES = [
    ("questionText", re.compile(r"^(?:Question|Q)\s*:\s*(.*)$")),
    ("correctAnswer", re.compile(r"^(?:Answer|Correct)\s*:\s*(.*)$")),
    ("marks", re.compile(r"^Marks\s*:\s*(.*)$")),
    ("timeLimit", re.compile(r"^Time\s*:\s*(.*)$")),
    ("optionA", re.compile(r"^A[).]\s*(.*)$")),
    ("optionB", re.compile(r"^B[).]\s*(.*)$")),
    ("optionC", re.compile(r"^C[).]\s*(.*)$")),
    ("optionD", re.compile(r"^D[).]\s*(.*)$")),
]


class NoValidQuestions(Exception):
    """Raised by callers when a file produced no usable question."""

    def __init__(self, message="No valid questions found in file"):
        super().__init__(message)
        self.message = message


def parse_int(value):
    """Leading-digits integer parse: '30' -> 30, '30s' -> 30, 'abc' -> None."""
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        if value != value:  # NaN from empty spreadsheet cells
            return None
        return int(value)
    match = LEADING_INT.match(str(value))
    return int(match.group(1)) if match else None


def decode(data):
    if isinstance(data, bytes):
        return data.decode("utf-8-sig", errors="replace")
    if data.startswith("\ufeff"):
        return data[1:]
    return data


def split_csv_line(line):
    """Split one CSV line into raw fields.

    A double quote toggles quoted mode and commas inside quotes are kept.
    A doubled quote inside a quoted field stands for one literal quote.
    """
    fields = []
    current = []
    in_quotes = False
    i = 0
    while i < len(line):
        ch = line[i]
        if ch == '"':
            if in_quotes and i + 1 < len(line) and line[i + 1] == '"':
                current.append('"')
                i += 2
                continue
            in_quotes = not in_quotes
        elif ch == "," and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(ch)
        i += 1
    fields.append("".join(current))
    return [clean_cell(f) for f in fields]


def clean_cell(value):
    if value is None:
        return ""
    if isinstance(value, float) and value != value:
        return ""
    text = str(value).strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        text = text[1:-1].strip()
    return text


def header_index(headers):
    """Map record keys to column positions using the header row."""
    positions = {}
    for key, names in COLUMN_ALIASES.items():
        for name in names:
            if name in headers:
                positions[key] = headers.index(name)
                break
    return positions


def to_int(value):
    if isinstance(value, numbers.Real):
        return parse_int(value)
    return parse_int(clean_cell(value))


def build_record(values):
    """Normalize a key -> raw value mapping; None if a required field is empty."""
    record = {key: clean_cell(values.get(key)) for key in REQUIRED_KEYS}
    if not all(record[key] for key in REQUIRED_KEYS):
        return None
    record["correctAnswer"] = record["correctAnswer"].upper()

    marks = to_int(values.get("marks"))
    record["marks"] = marks if marks is not None else 1
    record["timeLimit"] = to_int(values.get("timeLimit"))
    return record


def rows_to_records(headers, rows):
    positions = header_index([clean_cell(h) for h in headers])
    for row in rows:
        values = {}
        for key, pos in positions.items():
            values[key] = row[pos] if pos < len(row) else None
        record = build_record(values)
        if record:
            yield record


def parse_csv(text):
    lines = [line.rstrip("\r") for line in decode(text).split("\n")]
    if not lines or not lines[0].strip():
        return []
    headers = split_csv_line(lines[0])
    rows = (split_csv_line(line) for line in lines[1:] if line.strip())
    return number(rows_to_records(headers, rows))


def parse_block(block):
    values = {}
    for raw in block.split("\n"):
        line = raw.strip()
        if not line:
            continue
        for key, pattern in TEXT_PREFIXES:
            match = pattern.match(line)
            if match:
                values[key] = match.group(1).strip()
                break
    return build_record(values)


def parse_text(text):
    text = decode(text).replace("\r\n", "\n").replace("\r", "\n")
    blocks = BLANK_LINES.split(text)
    return number(r for r in (parse_block(b) for b in blocks) if r)


def parse_spreadsheet(data):
    if isinstance(data, str):
        data = data.encode("utf-8")
    try:
        df = pd.read_excel(io.BytesIO(data), dtype=object)
    except Exception as e:
        logger.warning("Unreadable spreadsheet upload: %s", e)
        raise NoValidQuestions("Could not read spreadsheet file") from e
    df.columns = [str(c).strip() for c in df.columns]
    rows = df.itertuples(index=False, name=None)
    return number(rows_to_records(list(df.columns), rows))


def number(records):
    out = []
    for i, record in enumerate(records, start=1):
        record["order"] = i
        out.append(record)
    return out


def grammar_for(filename):
    name = (filename or "").lower()
    if name.endswith(".txt"):
        return "text"
    if name.endswith(SPREADSHEET_SUFFIXES):
        return "spreadsheet"
    return "csv"


def parse_upload(data, filename):
    """Parse an uploaded file into question rows ready for bulk insert.

    The filename only selects the grammar: ``.txt`` is the block text format,
    ``.xlsx`` a spreadsheet with the CSV headers, anything else CSV.
    """
    grammar = grammar_for(filename)
    if grammar == "text":
        records = parse_text(data)
    elif grammar == "spreadsheet":
        records = parse_spreadsheet(data)
    else:
        records = parse_csv(data)
    logger.info("Parsed %d questions from %s (%s)", len(records), filename, grammar)
    return records
