# server.py
"""
DXSim HTTP service

Case library listing, gatekeeper session initialisation and the streaming
chat endpoint. Session state is keyed by the X-DXSim-Session header (or the
body's sessionId); callers that send neither share the "default" session,
which is the old single-session behaviour.
"""
from flask import Flask, request, jsonify, Response, g, stream_with_context
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_talisman import Talisman
import logging
import time
from datetime import datetime, timezone
from functools import wraps

from dxsim.config import CONFIG, RATE_LIMITS, CHAT_RATE_LIMIT, FORCE_HTTPS, DEFAULT_SESSION_ID
from dxsim.case_library.case_store import SupabaseCaseStore
from dxsim.case_library.catalog import CaseCatalog, NoCasesAvailable
from dxsim.core.datashapes import normalise_history
from dxsim.core.error_handler import (
    ErrorHandler, ErrorCategory, ErrorSeverity, CaseStoreError, EngineInitializationError
)
from dxsim.core.reference_resolver import ReferenceResolver
from dxsim.core.request_context import set_request_id
from dxsim.core.response_driver import ResponseDriver
from dxsim.core.session_coordinator import SessionCoordinator
from dxsim.core.session_state import SessionRegistry

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger('dxsim.server')

SESSION_HEADER = 'X-DXSim-Session'
SSE_HEADERS = {
    'Cache-Control': 'no-cache',
    'Connection': 'keep-alive',
    'X-Accel-Buffering': 'no',
}


def log_request(f):
    """Decorator to log every API request with its request id and duration"""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        g.request_id = set_request_id(request.headers.get('X-Request-ID'))
        logger.info(f"Request {g.request_id}: {request.method} {request.path}")

        start_time = time.time()
        result = f(*args, **kwargs)
        logger.info(f"Response {g.request_id}: Duration {time.time() - start_time:.3f}s")
        return result
    return decorated_function


def request_session_id(body=None) -> str:
    header_value = (request.headers.get(SESSION_HEADER) or '').strip()
    if header_value:
        return header_value
    if isinstance(body, dict) and isinstance(body.get('sessionId'), str) and body['sessionId'].strip():
        return body['sessionId'].strip()
    return DEFAULT_SESSION_ID


def case_identity(case_data, fallback=None):
    """Usable case id from request case data (or an explicit caseId), None if there isn't one."""
    for value in (case_data.get('id') if isinstance(case_data, dict) else None, fallback):
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def reconcile_case(coordinator: SessionCoordinator, session_id: str, case_data, fallback_id=None):
    """
    Bring the session in line with the request's case data.

    No case data at all keeps the session's current case. Case data without a
    usable id detaches the session from its case, so the previous case's
    reference document is never served with it.
    """
    if not isinstance(case_data, dict):
        return coordinator.ensure_context(session_id)
    case_id = case_identity(case_data, fallback_id)
    if case_id is None:
        logger.warning(f"Session {session_id}: case data without an id, serving without reference context")
        return coordinator.detach_case(session_id)
    return coordinator.ensure_context(session_id, case_id, case_data.get('doi'))


def build_services(error_handler: ErrorHandler = None):
    """Default production wiring: Supabase store, Gemini engine."""
    error_handler = error_handler or ErrorHandler()
    store = SupabaseCaseStore()
    resolver = ReferenceResolver(store, error_handler=error_handler)
    coordinator = SessionCoordinator(SessionRegistry(), resolver, error_handler=error_handler)
    driver = ResponseDriver(coordinator, error_handler=error_handler)
    return CaseCatalog(store), coordinator, driver, error_handler


def create_app(catalog: CaseCatalog = None,
               coordinator: SessionCoordinator = None,
               driver: ResponseDriver = None,
               error_handler: ErrorHandler = None,
               rate_limiting: bool = True) -> Flask:
    if catalog is None or coordinator is None or driver is None:
        catalog, coordinator, driver, error_handler = build_services(error_handler)
    error_handler = error_handler or ErrorHandler()

    app = Flask(__name__)
    app.extensions['dxsim'] = {
        'catalog': catalog,
        'coordinator': coordinator,
        'driver': driver,
        'error_handler': error_handler,
    }

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=RATE_LIMITS,
        storage_uri="memory://",
        enabled=rate_limiting
    )
    # Flask-Limiter only holds a weak reference to itself; the app must keep it alive
    app.extensions['dxsim']['limiter'] = limiter
    Talisman(app, force_https=FORCE_HTTPS, content_security_policy=None)

    @app.after_request
    def add_request_id(response):
        request_id = g.get('request_id')
        if request_id:
            response.headers['X-Request-ID'] = request_id
        return response

    @app.route('/health', methods=['GET'])
    @limiter.exempt
    def health_check():
        """Health check endpoint"""
        return jsonify({
            'status': 'healthy',
            'service': CONFIG['name'],
            'version': CONFIG['version'],
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'engine_ready': coordinator.engine_ready,
            'active_sessions': len(coordinator.registry),
            'errors': error_handler.get_error_summary()
        })

    # =========================================================================
    # CASE LIBRARY
    # =========================================================================

    @app.route('/api/cases', methods=['GET'])
    @log_request
    def list_cases():
        dataset = (request.args.get('dataset') or '').strip() or None
        try:
            cases, _rejected = catalog.list_cases(dataset)
        except CaseStoreError as e:
            error_handler.handle_error(e, ErrorCategory.CASE_STORE, ErrorSeverity.HIGH_DEGRADE,
                                       context={"dataset": dataset}, operation="list_cases")
            return jsonify({'cases': [], 'error': 'Failed to fetch cases'}), 500
        except Exception as e:
            error_handler.handle_error(e, ErrorCategory.GENERAL, ErrorSeverity.HIGH_DEGRADE,
                                       context={"dataset": dataset}, operation="list_cases")
            return jsonify({'cases': [], 'error': 'Internal server error'}), 500
        return jsonify({'cases': [case.to_dict() for case in cases]})

    @app.route('/api/random-case', methods=['GET'])
    @log_request
    def random_case():
        try:
            case = catalog.random_case()
        except NoCasesAvailable:
            return jsonify({'success': False, 'error': 'No cases found'}), 404
        except Exception as e:
            error_handler.handle_error(e, ErrorCategory.CASE_STORE, ErrorSeverity.HIGH_DEGRADE,
                                       operation="random_case")
            return jsonify({'success': False, 'error': 'Internal server error'}), 500

        if case is None:
            return jsonify({'success': False, 'error': 'Failed to find a valid random case'}), 500
        return jsonify({'success': True, 'case': case.to_dict()})

    @app.route('/api/datasets', methods=['GET'])
    @log_request
    def list_datasets():
        try:
            datasets = catalog.list_datasets()
        except CaseStoreError as e:
            error_handler.handle_error(e, ErrorCategory.CASE_STORE, ErrorSeverity.HIGH_DEGRADE,
                                       operation="list_datasets")
            return jsonify({'datasets': [], 'error': 'Failed to fetch datasets'}), 500
        except Exception as e:
            error_handler.handle_error(e, ErrorCategory.GENERAL, ErrorSeverity.HIGH_DEGRADE,
                                       operation="list_datasets")
            return jsonify({'datasets': [], 'error': 'Internal server error'}), 500
        return jsonify({'datasets': [dataset.to_dict() for dataset in datasets]})

    # =========================================================================
    # GATEKEEPER SESSION
    # =========================================================================

    @app.route('/api/initialize', methods=['POST'])
    @log_request
    def initialize():
        body = request.get_json(silent=True) or {}
        session_id = request_session_id(body)
        case_data = body.get('caseData')

        try:
            if isinstance(case_data, dict) and case_data.get('clinical_vignette'):
                logger.info(f"Initialize: session {session_id}, case {case_identity(case_data, body.get('caseId'))} "
                            f"({case_data.get('short_title') or 'untitled'})")
                context = reconcile_case(coordinator, session_id, case_data, body.get('caseId'))
                return jsonify({
                    'success': True,
                    'fileUri': context.reference_uri or 'no-pdf-available',
                    'initialResponse': case_data['clinical_vignette'],
                    'caseId': context.case_id
                })

            # Case-less initialisation: engine only
            logger.warning(f"Initialize: session {session_id} without case data")
            context = coordinator.ensure_context(session_id)
            if context.reference_uri:
                initial_response = 'Case already initialized. Ready for your commands.'
            else:
                initial_response = ('Legacy initialization completed. Please use case-specific '
                                    'initialization for proper PDF context.')
            return jsonify({
                'success': True,
                'fileUri': context.reference_uri or 'no-file',
                'initialResponse': initial_response
            })
        except Exception as e:
            error_handler.handle_error(e, ErrorCategory.SESSION_COORDINATION, ErrorSeverity.CRITICAL_STOP,
                                       context={"session_id": session_id}, operation="initialize")
            return jsonify({'success': False, 'error': 'Failed to initialize gatekeeper'}), 500

    @app.route('/api/session', methods=['GET'])
    @log_request
    def describe_session():
        session_id = request_session_id(request.args.to_dict())
        summary = coordinator.describe_session(session_id)
        if summary is None:
            return jsonify({'success': False, 'error': 'Unknown session'}), 404
        return jsonify({'success': True, 'session': summary})

    @app.route('/api/session', methods=['DELETE'])
    @log_request
    def end_session():
        body = request.get_json(silent=True) or {}
        session_id = request_session_id(body)
        removed = coordinator.end_session(session_id)
        return jsonify({'success': True, 'removed': removed, 'sessionId': session_id})

    @app.route('/api/chat', methods=['POST'])
    @limiter.limit(CHAT_RATE_LIMIT)
    @log_request
    def chat():
        body = request.get_json(silent=True) or {}
        session_id = request_session_id(body)
        message = body.get('message') if isinstance(body.get('message'), str) else ''
        if not message.strip():
            return jsonify({'success': False, 'error': 'Message is required'}), 400

        history = normalise_history(body.get('conversationHistory'))
        case_data = body.get('caseData')

        try:
            context = reconcile_case(coordinator, session_id, case_data)
        except EngineInitializationError:
            return jsonify({'success': False, 'error': 'Gatekeeper not initialized'}), 500
        except Exception as e:
            error_handler.handle_error(e, ErrorCategory.SESSION_COORDINATION, ErrorSeverity.CRITICAL_STOP,
                                       context={"session_id": session_id, "case_id": case_identity(case_data)},
                                       operation="chat")
            return jsonify({'success': False, 'error': 'Failed to process message'}), 500

        events = driver.respond(message, history, context)

        def generate():
            try:
                for event in events:
                    yield event.to_sse()
            finally:
                # Client went away or we finished; either way stop the producer
                events.close()

        return Response(stream_with_context(generate()), mimetype='text/event-stream', headers=SSE_HEADERS)

    return app


def main():
    app = create_app()
    logger.info(f"Starting {CONFIG['name']} on {CONFIG['host']}:{CONFIG['port']}")
    app.run(host=CONFIG['host'], port=CONFIG['port'], debug=CONFIG['debug'], threaded=True)


if __name__ == '__main__':
    main()
