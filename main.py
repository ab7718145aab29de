"""Multi-API Research Assistant - demo run

Runs one research session end to end with simulated providers and email,
then writes the PDF report to disk.
"""

import argparse
import asyncio
import sys
from pathlib import Path

from research_assistant.config import settings
from research_assistant.services.container import build_container


async def run_demo(title: str, answers: list[str], email: str | None, output: Path):
    """Refine, run both providers, finalize and save the report."""
    demo_settings = settings.model_copy(
        update={"demo_mode": True, "database_url": "", "report_storage_bucket": ""}
    )
    container = build_container(demo_settings)
    # Finalize explicitly below so the PDF bytes are available.
    container.scheduler.finalizer = None
    owner_uid = "cli-user"

    print(f"Research: {title}")
    print("-" * 50)

    session = await container.refinement.create_session(owner_uid, title)
    openai = session.provider("openai")
    index = 1
    while not openai.final_prompt:
        question = next((q for q in openai.questions if q.index == index), None)
        if question is None:
            break
        answer = answers[index - 1] if index - 1 < len(answers) else "No preference"
        print(f"\n[?] {question.text}")
        print(f"    {answer}")
        session = await container.refinement.submit_answer(session.id, owner_uid, answer, index)
        openai = session.provider("openai")
        index += 1

    print(f"\n[*] Status: {session.status.value}")

    result = await container.scheduler.schedule_session(session.id, owner_uid, user_email=email)
    if result.task is not None:
        await result.task
    await container.scheduler.wait_idle()

    session = await container.repository.get_by_id(session.id, owner_uid=owner_uid)
    for kind, state in session.providers.items():
        print(f"  [+] {kind.value}: {state.status.value} ({state.duration_ms}ms)")
    print(f"[*] Status: {session.status.value}")

    finalized = await container.finalizer.finalize(session.id, owner_uid, email)
    output.write_bytes(finalized.artifact_bytes)
    session = await container.repository.get_by_id(session.id, owner_uid=owner_uid)

    report = session.report
    print(f"\n[*] Report stored at {report.pdf_path}")
    print(f"    Email: {report.email_status.value if report.email_status else 'n/a'} -> {report.emailed_to}")
    print(f"    Written to {output} ({len(finalized.artifact_bytes)} bytes)")
    await container.shutdown()
    return 0 if session.status.value == "completed" else 1


def main():
    parser = argparse.ArgumentParser(description="Multi-API Research Assistant (demo mode)")
    parser.add_argument("--title", "-t", required=True, help="Research title")
    parser.add_argument(
        "--answer", "-a", action="append", default=[], help="Refinement answer (repeatable)"
    )
    parser.add_argument("--email", "-e", help="Recipient for the demo email")
    parser.add_argument("--output", "-o", default="report.pdf", help="Where to write the PDF")

    args = parser.parse_args()

    sys.exit(asyncio.run(run_demo(args.title, args.answer, args.email, Path(args.output))))


if __name__ == "__main__":
    main()
