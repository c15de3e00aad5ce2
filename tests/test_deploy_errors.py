from __future__ import annotations

from appgen.tools.build_check import CommandValidator, parse_compiler_output
from appgen.tools.deploy_errors import (
    format_errors_for_llm,
    get_files_to_fix,
    parse_deployment_errors,
)
from appgen.tools.workspace import ProjectFile

VERCEL_LOG = """
Creating an optimized production build ...
Failed to compile.

./src/app/page.tsx:12:4
Type error: Type 'string' is not assignable to type 'number'.

ESLint: Invalid Options: Unknown options: useEslintrc, extensions
Error: Command "npm run build" exited with 1
"""


def test_typescript_eslint_and_build_errors_are_extracted() -> None:
    parsed = parse_deployment_errors(VERCEL_LOG)

    typescript = [error for error in parsed.errors if error.category == "typescript"]
    assert len(typescript) == 1
    assert typescript[0].file == "src/app/page.tsx"
    assert typescript[0].line == 12
    assert typescript[0].column == 4
    assert typescript[0].message == "TypeScript: Type 'string' is not assignable to type 'number'."
    assert parsed.has_typescript_errors
    assert parsed.has_eslint_errors
    assert parsed.has_build_errors
    assert any(error.code == "BUILD_ERROR" and "npm run build" in error.message for error in parsed.errors)
    assert parsed.summary.startswith("Deployment failed with 1 TypeScript error(s)")


def test_logs_argument_is_searched_too() -> None:
    parsed = parse_deployment_errors("Deployment failed", logs="ESLint: 3:10 - Error: Unexpected any (no-explicit-any)")

    assert len(parsed.errors) == 1
    error = parsed.errors[0]
    assert error.code == "no-explicit-any"
    assert (error.line, error.column) == (3, 10)
    assert error.severity == "error"


def test_clean_output_has_no_errors() -> None:
    parsed = parse_deployment_errors("Build completed in 32s")

    assert parsed.errors == []
    assert parsed.summary == "No errors found"
    assert format_errors_for_llm(parsed) == "No errors to fix"


def test_format_errors_names_locations() -> None:
    text = format_errors_for_llm(parse_deployment_errors(VERCEL_LOG))

    assert text.startswith("DEPLOYMENT BUILD ERRORS:")
    assert "[TYPESCRIPT] src/app/page.tsx:12:4" in text
    assert "[ESLINT] Unknown location" in text


def test_files_to_fix_include_eslint_configs() -> None:
    files = [
        ProjectFile("src/app/page.tsx", "x"),
        ProjectFile("src/app/layout.tsx", "y"),
        ProjectFile("eslint.config.mjs", "export default []"),
    ]

    chosen = get_files_to_fix(parse_deployment_errors(VERCEL_LOG), files)

    assert [item.filename for item in chosen] == ["src/app/page.tsx", "eslint.config.mjs"]


def test_compiler_output_lines_are_parsed() -> None:
    output = (
        "src/app/page.tsx(3,5): error TS2322: Type 'string' is not assignable to type 'number'.\n"
        "./src/lib/api.ts(10,1): error TS2304: Cannot find name 'fetcher'.\n"
    )

    errors = parse_compiler_output(output)

    assert [(error.file, error.line, error.code) for error in errors] == [
        ("src/app/page.tsx", 3, "TS2322"),
        ("src/lib/api.ts", 10, "TS2304"),
    ]


def test_compiler_output_falls_back_to_deployment_parser() -> None:
    errors = parse_compiler_output('Error: Command "next build" exited with 1')

    assert errors[0].code == "BUILD_ERROR"


def test_command_validator_skips_missing_executables(tmp_path) -> None:
    validator = CommandValidator(workdir=tmp_path, commands=[["appgen-no-such-binary", "--check"]])
    current = [ProjectFile("package.json", "{}")]
    generated = [ProjectFile("src/app/page.tsx", "export default function Page() { return null; }")]

    report = validator.validate(generated, current)

    assert report.success is True
    assert report.files == generated
    assert (tmp_path / "package.json").read_text(encoding="utf-8") == "{}"
    assert (tmp_path / "src" / "app" / "page.tsx").exists()
