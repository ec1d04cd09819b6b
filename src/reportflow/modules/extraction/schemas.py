from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel

from reportflow.modules.extraction.amounts import ExtractionResult, FileKind


class ExtractedAmountOut(BaseModel):
    value: Decimal
    source_file: str
    source_column: str


class ExtractionResultOut(BaseModel):
    file_name: str
    file_kind: FileKind
    matched_column: str | None
    amounts: list[ExtractedAmountOut]
    total: Decimal
    warnings: list[str]

    @classmethod
    def from_result(cls, result: ExtractionResult) -> ExtractionResultOut:
        return cls(
            file_name=result.file_name,
            file_kind=result.file_kind,
            matched_column=result.matched_column,
            amounts=[
                ExtractedAmountOut(
                    value=a.value, source_file=a.source_file, source_column=a.source_column
                )
                for a in result.amounts
            ],
            total=result.total,
            warnings=list(result.warnings),
        )
