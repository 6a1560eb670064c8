import logging
import json

# `extra` fields copied into the JSON line. Nothing else from the record is
# emitted, so plaintext or constraint values passed by mistake stay out.
EXTRA_FIELDS = ('envelope_uuid', 'model', 'kind', 'severity', 'state', 'hint',
                'tracker_key', 'count', 'table', 'code')


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name in EXTRA_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                payload[name] = value
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def configure_json_logging(level=logging.INFO):
    logger = logging.getLogger()
    logger.setLevel(level)

    # Repeated calls (one per CLI run) keep a single JSON handler
    if not any(isinstance(h.formatter, JSONFormatter) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(JSONFormatter())
        logger.addHandler(handler)

    return logger
