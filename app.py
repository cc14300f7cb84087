"""
Flask Web Application for the Blueprint Coaching System

JSON API over the session runtime. The runtime is asyncio; every handler
submits its work to one background event loop and waits for the result.
"""

from flask import Flask, request, jsonify
import logging
import os

from blueprint_coach.bootstrap import build_service
from blueprint_coach.commands import Notify
from blueprint_coach.contracts import Provenance, Stage
from blueprint_coach.core.session_runtime import SessionService
from blueprint_coach.settings import CoachSettings
from blueprint_coach.utils.loop_runner import BackgroundLoop

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 60


def notice_to_dict(notice: Notify) -> dict:
    return {'level': notice.level, 'code': notice.code, 'message': notice.message}


def create_app(service: SessionService = None, runner: BackgroundLoop = None) -> Flask:
    """
    Build the Flask app.

    Args:
        service: Session service (built from environment settings if omitted)
        runner: Background loop the service runs on (started if omitted)

    Returns:
        Flask: Configured app
    """
    app = Flask(__name__)
    runner = runner or BackgroundLoop().start()
    service = service or build_service(CoachSettings.from_env())
    app.config['RUNNER'] = runner
    app.config['SERVICE'] = service

    def run(coro):
        return runner.run(coro, timeout=REQUEST_TIMEOUT_SECONDS)

    def error_response(message, status):
        return jsonify({'success': False, 'error': message}), status

    def turn_response(turn):
        payload = turn.to_dict()
        payload['success'] = True
        return jsonify(payload)

    @app.errorhandler(KeyError)
    def handle_unknown_session(e):
        return error_response(f"Unknown session: {e.args[0] if e.args else ''}", 404)

    @app.errorhandler(ValueError)
    def handle_bad_request(e):
        return error_response(str(e), 400)

    @app.route('/api/health')
    def health():
        return jsonify({'success': True, 'open_sessions': len(service.open_ids())})

    @app.route('/api/sessions', methods=['POST'])
    def create_session():
        """Start a new blueprint"""
        try:
            data = request.get_json(silent=True) or {}

            async def _create():
                return service.create(data.get('session_id')).snapshot()

            snapshot = run(_create())
            logger.info(f"New session created: {snapshot['session_id']}")
            return jsonify({
                'success': True,
                'session_id': snapshot['session_id'],
                'prompt': snapshot['prompt'],
                'snapshot': snapshot
            })
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Error creating session: {e}")
            return error_response(str(e), 500)

    @app.route('/api/sessions/<session_id>/load', methods=['POST'])
    def load_session(session_id):
        """Open a stored session (recovered and validated)"""
        try:
            async def _load():
                return (await service.load(session_id)).snapshot()

            snapshot = run(_load())
            return jsonify({
                'success': True,
                'session_id': session_id,
                'prompt': snapshot['prompt'],
                'snapshot': snapshot
            })
        except ValueError:
            raise
        except Exception as e:
            logger.error(f"Error loading session {session_id}: {e}")
            return error_response(str(e), 500)

    @app.route('/api/sessions/<session_id>', methods=['GET'])
    def get_snapshot(session_id):
        """Current state for rendering"""
        return jsonify({'success': True, 'snapshot': service.get(session_id).snapshot()})

    @app.route('/api/sessions/<session_id>/input', methods=['POST'])
    def submit_input(session_id):
        """Submit typed text (or an adopted suggestion)"""
        session = service.get(session_id)
        data = request.get_json(silent=True) or {}
        text = data.get('text')
        if not isinstance(text, str):
            return error_response("'text' must be a string", 400)
        provenance = Provenance.SUGGESTED if data.get('suggested') else Provenance.USER
        try:
            return turn_response(run(session.submit_input(text, provenance=provenance)))
        except Exception as e:
            logger.error(f"Error processing input for {session_id}: {e}")
            return error_response(str(e), 500)

    @app.route('/api/sessions/<session_id>/confirm', methods=['POST'])
    def resolve_confirmation(session_id):
        """Accept or refine the pending value"""
        session = service.get(session_id)
        data = request.get_json(silent=True) or {}
        accept = data.get('accept')
        if not isinstance(accept, bool):
            return error_response("'accept' must be true or false", 400)
        try:
            return turn_response(run(session.resolve_confirmation(accept)))
        except Exception as e:
            logger.error(f"Error resolving confirmation for {session_id}: {e}")
            return error_response(str(e), 500)

    @app.route('/api/sessions/<session_id>/jump', methods=['POST'])
    def request_stage_jump(session_id):
        """Navigate to another stage (validated; rejections are not errors)"""
        session = service.get(session_id)
        data = request.get_json(silent=True) or {}
        try:
            target = Stage(data.get('stage'))
        except ValueError:
            valid = [s.value for s in Stage]
            return error_response(f"'stage' must be one of {valid}", 400)
        try:
            return turn_response(run(session.request_stage_jump(target)))
        except Exception as e:
            logger.error(f"Error jumping stage for {session_id}: {e}")
            return error_response(str(e), 500)

    @app.route('/api/sessions/<session_id>/reset', methods=['POST'])
    def reset_session(session_id):
        """Clear the blueprint and start over"""
        session = service.get(session_id)
        try:
            return turn_response(run(session.reset()))
        except Exception as e:
            logger.error(f"Error resetting {session_id}: {e}")
            return error_response(str(e), 500)

    @app.route('/api/notifications', methods=['GET'])
    def get_notifications():
        """Drain pending notices (persistence and recovery problems)"""
        notices = service.notifications.drain()
        return jsonify({'success': True, 'notifications': [notice_to_dict(n) for n in notices]})

    @app.route('/api/sync', methods=['POST'])
    def drain_sync_queue():
        """Retry delayed cloud saves (call when connectivity returns)"""
        try:
            report = run(service.drain_sync_queue())
            return jsonify({
                'success': True,
                'attempted': report.attempted,
                'succeeded': report.succeeded,
                'remaining': report.remaining
            })
        except Exception as e:
            logger.error(f"Error draining sync queue: {e}")
            return error_response(str(e), 500)

    return app


if __name__ == '__main__':
    settings = CoachSettings.from_env()
    os.makedirs(settings.storage_root, exist_ok=True)

    app = create_app(service=build_service(settings))

    print("\n" + "="*60)
    print("BLUEPRINT COACH - WEB API")
    print("="*60)
    print("\nServer starting...")
    print("API available at: http://localhost:5000/api")
    print("\nPress Ctrl+C to stop the server")
    print("="*60 + "\n")

    app.run(debug=False, host='0.0.0.0', port=5000)
