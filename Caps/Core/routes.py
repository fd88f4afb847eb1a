"""Flask routes for the Caps API."""
from flask import Response, g, request, stream_with_context
from cerberus import Validator
import json
import logging
import uuid

import Caps.Core.health as health
import Caps.Core.metrics as metrics
import Caps.Core.playbook_engine as playbook_engine
import Caps.Helpers.logSettings as logLevel
from Caps.Core.playbook.ledger import LedgerUnavailable
from Caps.Core.playbook.models import InvalidTransition
from Caps.Core.playbook_engine import RunNotFound
from Caps.Core.playbook_parser import PlaybookParseError, parse_playbook
from config import Constants

# Log Setup
logger = logging.getLogger(__name__)
logger.setLevel(logLevel.logSetup())

VALIDATE_SCHEMA = {
    'document': {'type': 'string', 'required': True, 'empty': False},
}

START_RUN_SCHEMA = {
    'document': {'type': 'string', 'required': False, 'empty': False,
                 'excludes': 'playbook_id'},
    'playbook_id': {'type': 'string', 'required': False, 'empty': False,
                    'excludes': 'document'},
    'version': {'type': 'string', 'required': False, 'dependencies': 'playbook_id'},
    'context': {'type': 'dict', 'required': False},
    'skip': {'type': 'list', 'required': False, 'schema': {'type': 'string'}},
    'wait': {'type': 'boolean', 'required': False},
}

RESUME_SCHEMA = {
    'wait': {'type': 'boolean', 'required': False},
}

SKIP_SCHEMA = {
    'step': {'type': 'string', 'required': True, 'empty': False},
    'reason': {'type': 'string', 'required': False},
}

ROLLBACK_SCHEMA = {
    'step': {'type': 'string', 'required': False, 'empty': False},
}


def _response(success, message, results="", status=Constants.HTTP_OK):
    return json.dumps({
        "success": success,
        "message": message,
        "results": results
    }, default=str), status


def _error_response(e):
    """Map engine errors onto HTTP responses."""
    if isinstance(e, RunNotFound):
        return _response(False, str(e), status=Constants.HTTP_NOT_FOUND)
    if isinstance(e, InvalidTransition):
        return _response(False, str(e), status=Constants.HTTP_CONFLICT)
    if isinstance(e, PlaybookParseError):
        return _response(False, str(e), {"field": e.field}, Constants.HTTP_BAD_REQUEST)
    if isinstance(e, LedgerUnavailable):
        logger.log(level=40, msg=f"Ledger unavailable: {str(e)}")
        return _response(False, f"Ledger unavailable: {str(e)}",
                         status=Constants.HTTP_SERVICE_UNAVAILABLE)
    raise e


def _load_body(allow_empty=True):
    """Parse the JSON body; None when it is not a JSON object."""
    data = request.get_data(as_text=True)
    if not data.strip():
        return {} if allow_empty else None
    try:
        jData = json.loads(data)
    except ValueError:
        return None
    return jData if isinstance(jData, dict) else None


def exposeRoutes(app, engine=None):
    """Register all routes with the Flask app."""

    def _engine():
        return engine or playbook_engine.get_engine()

    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get('X-Request-ID') or str(uuid.uuid4())

    @app.after_request
    def echo_request_id(response):
        response.headers['X-Request-ID'] = getattr(g, 'request_id', '')
        return response

    @app.route('/health')
    def health_check():
        """Comprehensive health check endpoint."""
        status = health.get_full_health_status(_engine())
        http_status = 200 if status["status"] != "unhealthy" else 503
        return json.dumps(status), http_status

    @app.route('/health/live')
    def liveness():
        """Kubernetes liveness probe endpoint."""
        return json.dumps(health.get_liveness_status()), 200

    @app.route('/health/ready')
    def readiness():
        """Kubernetes readiness probe endpoint."""
        status = health.get_readiness_status(_engine())
        http_status = 200 if status["status"] == "ready" else 503
        return json.dumps(status), http_status

    @app.route('/metrics')
    def prometheus_metrics():
        """Prometheus metrics endpoint."""
        return Response(
            metrics.get_metrics(),
            mimetype=metrics.get_metrics_content_type()
        )

    @app.route('/v1/playbooks', methods=['GET'])
    @metrics.track_request_metrics
    def playbooks():
        return _response(True, "", _engine().catalog.list())

    @app.route('/v1/playbooks/validate', methods=['POST'])
    @metrics.track_request_metrics
    def validate_playbook():
        jData = _load_body(allow_empty=False)
        if jData is None or not validateRequestData(VALIDATE_SCHEMA, jData):
            logger.log(level=30, msg="Submitted invalid parameters. Aborting request.")
            return _response(
                False,
                "You have provided invalid request data. Please provide the playbook in the `document` JSON field.",
                status=Constants.HTTP_BAD_REQUEST
            )
        try:
            playbook = parse_playbook(jData['document'])
        except PlaybookParseError as e:
            return _response(True, "Playbook is invalid.", {
                "valid": False,
                "errors": [str(e)],
                "field": e.field,
            })
        return _response(True, "Playbook is valid.", {
            "valid": True,
            "errors": [],
            "playbook": {
                "id": playbook.id,
                "title": playbook.title,
                "version": playbook.version,
                "steps": playbook.step_names,
                "order": playbook.topological_order(),
            },
        })

    @app.route('/v1/runs', methods=['POST', 'GET'])
    @metrics.track_request_metrics
    def runs():
        if request.method == 'GET':
            try:
                return _response(True, "", _engine().list_runs())
            except LedgerUnavailable as e:
                return _error_response(e)

        jData = _load_body(allow_empty=False)
        if jData is None or not validateRequestData(START_RUN_SCHEMA, jData) or not (
            jData.get('document') or jData.get('playbook_id')
        ):
            logger.log(level=30, msg="Submitted invalid parameters. Aborting request.")
            return _response(
                False,
                "You have provided invalid request data. Please provide either `document` or `playbook_id`.",
                status=Constants.HTTP_BAD_REQUEST
            )

        eng = _engine()
        if jData.get('playbook_id'):
            playbook = eng.catalog.get(jData['playbook_id'], jData.get('version'))
            if playbook is None:
                return _response(
                    False,
                    f"Playbook {jData['playbook_id']} is not loaded.",
                    status=Constants.HTTP_NOT_FOUND
                )
        else:
            playbook = jData['document']

        wait = bool(jData.get('wait', False))
        try:
            run_id = eng.start_run(
                playbook,
                context=jData.get('context'),
                skip=jData.get('skip'),
                wait=wait,
            )
        except (PlaybookParseError, InvalidTransition, LedgerUnavailable) as e:
            return _error_response(e)

        logger.log(level=20, msg=f"Run {run_id} started via API")
        if wait:
            return _response(True, "Run finished.", eng.get_status(run_id),
                             Constants.HTTP_OK)
        return _response(True, "Run started.", {"run_id": run_id},
                         Constants.HTTP_ACCEPTED)

    @app.route('/v1/runs/<string:run_id>', methods=['GET'])
    @metrics.track_request_metrics
    def run_status(run_id):
        try:
            return _response(True, "", _engine().get_status(run_id))
        except (RunNotFound, LedgerUnavailable) as e:
            return _error_response(e)

    @app.route('/v1/runs/<string:run_id>/resume', methods=['POST'])
    @metrics.track_request_metrics
    def resume_run(run_id):
        jData = _load_body()
        if jData is None or not validateRequestData(RESUME_SCHEMA, jData):
            return _response(False, "Invalid request data.",
                             status=Constants.HTTP_BAD_REQUEST)
        wait = bool(jData.get('wait', False))
        try:
            status = _engine().resume_run(run_id, wait=wait)
        except (RunNotFound, InvalidTransition, LedgerUnavailable) as e:
            return _error_response(e)
        return _response(True, f"Run {run_id} is {status.value}.",
                         {"run_id": run_id, "status": status.value},
                         Constants.HTTP_OK if wait else Constants.HTTP_ACCEPTED)

    @app.route('/v1/runs/<string:run_id>/abort', methods=['POST'])
    @metrics.track_request_metrics
    def abort_run(run_id):
        try:
            aborted = _engine().abort_run(run_id)
        except (RunNotFound, LedgerUnavailable) as e:
            return _error_response(e)
        if not aborted:
            return _response(False, f"Run {run_id} has already ended.",
                             status=Constants.HTTP_CONFLICT)
        return _response(True, f"Abort requested for run {run_id}.",
                         {"run_id": run_id}, Constants.HTTP_ACCEPTED)

    @app.route('/v1/runs/<string:run_id>/skip', methods=['POST'])
    @metrics.track_request_metrics
    def skip_step(run_id):
        jData = _load_body(allow_empty=False)
        if jData is None or not validateRequestData(SKIP_SCHEMA, jData):
            return _response(False, "You have provided invalid request data. `step` is required.",
                             status=Constants.HTTP_BAD_REQUEST)
        try:
            _engine().skip_step(run_id, jData['step'], reason=jData.get('reason', ''))
        except (RunNotFound, InvalidTransition, LedgerUnavailable) as e:
            return _error_response(e)
        return _response(True, f"Step {jData['step']} skipped.",
                         {"run_id": run_id, "step": jData['step']})

    @app.route('/v1/runs/<string:run_id>/rollback', methods=['POST'])
    @metrics.track_request_metrics
    def rollback(run_id):
        jData = _load_body()
        if jData is None or not validateRequestData(ROLLBACK_SCHEMA, jData):
            return _response(False, "Invalid request data.",
                             status=Constants.HTTP_BAD_REQUEST)
        eng = _engine()
        try:
            if jData.get('step'):
                results = [eng.rollback_step(run_id, jData['step'])]
            else:
                results = eng.rollback_run(run_id)
        except (RunNotFound, InvalidTransition, LedgerUnavailable) as e:
            return _error_response(e)
        succeeded = all(r["rolled_back"] for r in results)
        return _response(
            succeeded,
            "Rollback finished." if succeeded else "Rollback failed.",
            results,
            Constants.HTTP_OK if succeeded else Constants.HTTP_INTERNAL_ERROR
        )

    @app.route('/v1/runs/<string:run_id>/events', methods=['GET'])
    @metrics.track_request_metrics
    def run_events(run_id):
        try:
            after = int(request.args.get('after', 0))
            timeout = request.args.get('timeout')
            timeout = float(timeout) if timeout else None
        except ValueError:
            return _response(False, "`after` and `timeout` must be numbers.",
                             status=Constants.HTTP_BAD_REQUEST)
        follow = request.args.get('follow', '0').lower() in ('1', 'true', 'yes')

        try:
            events = _engine().stream_events(
                run_id, follow=follow, after=after, timeout=timeout
            )
            if not follow:
                return _response(True, "", [e.to_dict() for e in events])
        except (RunNotFound, LedgerUnavailable) as e:
            return _error_response(e)

        def generate():
            for event in events:
                yield json.dumps(event.to_dict(), default=str) + "\n"

        return Response(stream_with_context(generate()),
                        mimetype='application/x-ndjson')


def validateRequestData(schema, jData):
    """Validate request data against a schema."""
    try:
        v = Validator(schema)
        result = v.validate(jData)
    except Exception as e:
        logger.log(level=40, msg=f"Validation Error: {str(e)}")
        return False
    return result
