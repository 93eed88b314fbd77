from dataclasses import asdict
import json
from pathlib import Path

from tripledger.schemas import CompletenessProof, ManifestImportResult, PartitionKey


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True, default=str)
        outfile.write("\n")


def write_proof_report(
    report_dir: str,
    *,
    result: ManifestImportResult,
    proof: CompletenessProof,
    partition: PartitionKey,
    allowlist_version: str,
) -> Path:
    report_path = Path(report_dir) / f"batch-{result.import_id}.json"
    write_json(
        report_path,
        {
            "import_id": result.import_id,
            "format": result.format,
            "file_fingerprint": result.file_fingerprint,
            "partition": asdict(partition),
            "allowlist_version": allowlist_version,
            "extracted_columns": result.extracted_columns,
            "ignored_columns": result.ignored_columns,
            "los_counts": result.los_counts,
            "proof": asdict(proof),
            "errors": [asdict(error) for error in result.errors],
            "warnings": result.warnings,
        },
    )
    return report_path
