from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest


FAKE_TOOL = '''#!{python}
import argparse
import os
import sys
import time

parser = argparse.ArgumentParser()
parser.add_argument("subcommand")
parser.add_argument("--input-dataset", required=True)
parser.add_argument("--jobs", type=int, required=True)
parser.add_argument("--in-order", action="store_true")
parser.add_argument("--verbosity")
parser.add_argument("--output-tsv", required=True)
parser.add_argument("--output-fasta", required=True)
parser.add_argument("--output-translations", required=True)
parser.add_argument("input")
args = parser.parse_args()

name = os.path.basename(args.input).split(".")[0]
time.sleep(float(os.environ.get("FAKE_TOOL_SLEEP", "0")))
if "fail" in name:
    print("simulated tool failure for " + name, file=sys.stderr)
    sys.exit(3)

records = []
with open(args.input, encoding="utf-8") as handle:
    for line in handle:
        line = line.strip()
        if line.startswith(">"):
            records.append([line[1:], ""])
        elif line:
            records[-1][1] += line

with open(args.output_tsv, "w", encoding="utf-8") as out:
    out.write("index\\tseqName\\tclade\\tjobs\\n")
    for i, (seq_name, _) in enumerate(records):
        out.write(f"{{i}}\\t{{seq_name}}\\t20A\\t{{args.jobs}}\\n")
with open(args.output_fasta, "w", encoding="utf-8") as out:
    for seq_name, seq in records:
        out.write(f">{{seq_name}}\\n{{seq}}\\n")
'''


def write_chunk(path: Path, records: dict[str, str]) -> Path:
    lines: list[str] = []
    for name, seq in records.items():
        lines.append(f">{name}")
        lines.append(seq)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def write_chunks(input_dir: Path, names: list[str]) -> list[Path]:
    return [
        write_chunk(
            input_dir / f"{name}.fasta",
            {f"{name}_s1": "ACGTNACGT-", f"{name}_s2": "ACGTACGTAC"},
        )
        for name in names
    ]


@pytest.fixture
def fake_tool(tmp_path: Path) -> Path:
    path = tmp_path / "bin" / "nextclade"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(FAKE_TOOL.format(python=sys.executable), encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def dataset_dir(tmp_path: Path) -> Path:
    path = tmp_path / "dataset"
    path.mkdir()
    (path / "pathogen.json").write_text("{}\n", encoding="utf-8")
    return path


@pytest.fixture
def make_chunks():
    return write_chunks
