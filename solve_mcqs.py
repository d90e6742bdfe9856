#!/usr/bin/env python3
# solve_mcqs.py
"""
CLI for the MCQ ensemble solver.

Usage:
    python solve_mcqs.py --image path/to/questions.png
    python solve_mcqs.py --text-file questions.txt --models cerebras:llama-3.3-70b models/gemini-2.5-flash

Output:
    - Console table with the selected answer(s) per question
    - Optional JSON file with the full response (per-model audit with --debug)
"""
import argparse
import asyncio
import json
import os
import sys

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from mcq_core.config import setup_logging
from mcq_core.pipeline import MCQPipeline

load_dotenv()
console = Console()


def render_result(result: dict) -> None:
    """Print answers, plus a per-model breakdown when debug data is present."""
    table = Table(title="Answers", show_lines=True)
    table.add_column("#", style="cyan", width=4)
    table.add_column("Question", style="white", max_width=60)
    table.add_column("Answer", style="green", max_width=50)

    for item in result.get("questions", []):
        table.add_row(
            str(item["question_id"]),
            item["question"],
            "\n".join(item["answer"]) or "[red]no answer[/red]"
        )
    console.print(table)

    for entry in result.get("debug", {}).get("per_question", []):
        detail = Table(title=f"Q{entry['question_id']} per-model votes "
                             f"(confidence {entry['final_confidence']:.0%}"
                             f"{', ambiguous' if entry['ambiguous'] else ''})")
        detail.add_column("Model", style="cyan")
        detail.add_column("Status", justify="center")
        detail.add_column("Weight", justify="right")
        detail.add_column("Selected", justify="center")
        detail.add_column("Conf", justify="right")
        for vote in entry["per_model"]:
            status = "[green]ok[/green]" if vote["status"] == "success" else f"[red]{vote['error']}[/red]"
            conf = f"{vote['confidence']:.2f}" if vote["confidence"] is not None else "-"
            detail.add_row(vote["model"], status, f"{vote['weight']:.2f}",
                           ",".join(vote["selected_options"]) or "-", conf)
        console.print(detail)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Answer multiple choice questions with a weighted LLM ensemble",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    python solve_mcqs.py --image quiz.png
    python solve_mcqs.py --image quiz.png --debug --output answers.json
    python solve_mcqs.py --text-file quiz.txt
        """
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--image", help="Path to an image containing questions")
    source.add_argument("--text-file", help="Path to a text file containing questions")
    parser.add_argument("--models", nargs="+", help="Model identities to query (default: configured list)")
    parser.add_argument("--config", default="config.yaml", help="Config file (default: config.yaml)")
    parser.add_argument("--debug", action="store_true", help="Include per-model audit data")
    parser.add_argument("--output", help="Write the full JSON response to this file")

    args = parser.parse_args()
    setup_logging()

    path = args.image or args.text_file
    if not os.path.exists(path):
        console.print(f"[red]Error: file not found: {path}[/red]")
        sys.exit(1)

    pipeline = MCQPipeline.from_config(args.config)

    if args.image:
        with open(path, "rb") as f:
            image = f.read()
        console.print(f"\n[cyan]Solving questions in {path}...[/cyan]")
        result = asyncio.run(pipeline.process_image(image, debug=args.debug, requested_models=args.models, req_id="cli"))
    else:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
        console.print(f"\n[cyan]Solving questions in {path}...[/cyan]")
        result = asyncio.run(pipeline.process_text(text, debug=args.debug, requested_models=args.models, req_id="cli"))

    if "error" in result:
        console.print(f"[red]Error ({result['error']}): {result.get('message', '')}[/red]")
        sys.exit(1)

    console.print("\n[green]✓ Solving Complete[/green]")
    render_result(result)

    if args.output:
        with open(args.output, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2)
        console.print(f"\n[green]Results saved to {args.output}[/green]")


if __name__ == "__main__":
    main()
