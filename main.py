"""Deep Research Assistant

Simple CLI for running one research session end to end.
"""

import argparse
import asyncio
import sys

from deepresearch.api.deps import build_services
from deepresearch.config import settings
from deepresearch.errors import ResearchError
from deepresearch.models.session import ResearchStatus


def _ask(question: str) -> str:
    while True:
        answer = input(f"  > {question}\n    ").strip()
        if answer:
            return answer
        print("    An answer is required.")


async def run_research(prompt: str, email: str, answers: list[str] | None = None) -> int:
    """Run the full flow against an in-memory store. Returns a process exit code."""
    config = settings.model_copy(
        update={"session_store_backend": "memory", "background_strategy": "in_process"}
    )
    services = build_services(config)
    orchestrator = services.orchestrator
    pending_answers = list(answers or [])

    print(f"Research prompt: {prompt}")
    print("-" * 50)

    try:
        started = await orchestrator.start_research("cli", email, prompt)
        session_id = started.session_id

        if started.refinement_questions:
            print(f"\n[*] {len(started.refinement_questions)} refinement question(s):")
            for question in started.refinement_questions:
                if pending_answers:
                    answer = pending_answers.pop(0)
                    print(f"  {question.id}. {question.question}\n     -> {answer}")
                else:
                    answer = _ask(question.question)
                result = await orchestrator.submit_answer(session_id, question.id, answer)
            if result.refined_prompt:
                print(f"\n[+] Refined prompt:\n{result.refined_prompt}")

        print("\n[~] Researching with OpenAI and Gemini...")
        await services.background.wait(session_id)

        session = await orchestrator.get_results(session_id)
    except ResearchError as e:
        print(f"\n[!] Error: {e}")
        return 1
    finally:
        await services.aclose()

    print(f"\n[*] Final status: {session.status.value}")
    if session.error:
        print(f"[!] Error: {session.error}")
    if session.email_sent_at:
        print(f"[+] Report sent to {email} at {session.email_sent_at:%Y-%m-%d %H:%M:%S} UTC")
    return 0 if session.status == ResearchStatus.EMAIL_SENT else 1


def main():
    parser = argparse.ArgumentParser(description="Deep Research Assistant")
    parser.add_argument("--prompt", "-p", required=True, help="Research prompt")
    parser.add_argument("--email", "-e", required=True, help="Address to send the report to")
    parser.add_argument(
        "--answers",
        "-a",
        nargs="*",
        default=None,
        help="Answers to refinement questions, in order (prompted for when missing)",
    )

    args = parser.parse_args()

    sys.exit(asyncio.run(run_research(args.prompt, args.email, args.answers)))


if __name__ == "__main__":
    main()
