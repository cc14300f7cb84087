"""
Console Test Harness for the Blueprint Coach

Simple console loop over the session runtime before adding Flask
complexity. Commands:
    :yes / :no      accept or refine the pending value
    :jump <stage>   request a stage jump (topic_1 ... deliverables)
    :reset          start over
    :status         show the snapshot
    :sync           retry delayed cloud saves
    quit            exit
"""

import asyncio
import logging
import sys

from blueprint_coach.bootstrap import build_service
from blueprint_coach.contracts import Stage
from blueprint_coach.settings import CoachSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

EXIT_COMMANDS = {'quit', 'exit', 'stop'}


def print_separator(char="=", length=60):
    """Print a separator line"""
    print(char * length)


def print_status(snapshot):
    """Print the session snapshot"""
    print("\n" + "-" * 60)
    print(f"Stage: {snapshot['stage_label']} ({snapshot['status']}, "
          f"{snapshot['completion_ratio']:.0%} complete, revision {snapshot['revision']})")
    for captured in snapshot['fields']:
        marker = "x" if captured['confirmed'] else " "
        print(f"  [{marker}] {captured['key']}: {captured['value']}")
    if snapshot['pending']:
        print(f"Pending: {snapshot['pending']['proposed_value']} ({snapshot['pending']['status']})")
    if snapshot['sub_step']:
        sub = snapshot['sub_step']
        print(f"Micro-step: {sub['address']} ({sub['index'] + 1}/{sub['length']})")
    if snapshot['local_only']:
        print("Cloud save unavailable: working locally")
    print("-" * 60)


def print_notifications(service):
    for notice in service.notifications.drain():
        print(f"  ! [{notice.level}] {notice.message}")


async def run_console(session_id=None):
    """Run the console loop"""
    settings = CoachSettings.from_env()
    service = build_service(settings)

    if session_id:
        session = await service.load(session_id)
    else:
        session = service.create()

    print_separator()
    print(f"BLUEPRINT SESSION {session.session_id}")
    print_separator()
    print("Type 'quit' to end, ':status' for progress\n")
    print(f"\nCoach: {session.prompt}\n")

    loop = asyncio.get_running_loop()
    while True:
        try:
            user_input = (await loop.run_in_executor(None, input, "> ")).strip()
        except (EOFError, KeyboardInterrupt):
            print("\n\nSession interrupted by user")
            break

        if not user_input:
            continue
        if user_input.lower() in EXIT_COMMANDS:
            break

        try:
            if user_input == ':yes':
                turn = await session.resolve_confirmation(True)
            elif user_input == ':no':
                turn = await session.resolve_confirmation(False)
            elif user_input.startswith(':jump'):
                turn = await session.request_stage_jump(Stage(user_input.split(maxsplit=1)[-1].strip()))
            elif user_input == ':reset':
                turn = await session.reset()
            elif user_input == ':status':
                print_status(session.snapshot())
                continue
            elif user_input == ':sync':
                report = await service.drain_sync_queue()
                print(f"Synced {report.succeeded}/{report.attempted}, {report.remaining} still queued")
                continue
            else:
                turn = await session.submit_input(user_input)
        except ValueError as e:
            print(f"\nERROR: {e}\n")
            continue

        print(f"\nCoach: {turn.prompt}\n")
        print(f"[{turn.outcome.value}]")
        print_notifications(service)

        if turn.snapshot['stage'] == Stage.COMPLETE.value:
            print_separator()
            print("BLUEPRINT COMPLETE")
            print_separator()
            print_status(turn.snapshot)
            break

    await service.close_all()
    print_separator()
    print("Console session complete")
    print_separator()
    return 0


def main():
    session_id = sys.argv[1] if len(sys.argv) > 1 else None
    try:
        return asyncio.run(run_console(session_id))
    except Exception as e:
        print(f"\nFailed to run session: {e}")
        import traceback
        traceback.print_exc()
        return 1


if __name__ == '__main__':
    sys.exit(main())
