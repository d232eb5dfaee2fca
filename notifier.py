from __future__ import annotations

import json
import logging
import time

from kafka import KafkaProducer
from kafka.errors import KafkaError

logger = logging.getLogger(__name__)

KAFKA_EVENT_TOPIC = 'loadrunner_events'
PLUGIN_NAME = 'loadrunner-cloud-event'
SEND_TIMEOUT_SECONDS = 10

MESSAGE_TYPE_RUN_STARTED = 'RUN_STARTED'
MESSAGE_TYPE_GO = 'GO'
MESSAGE_TYPE_STOP = 'STOP'

MESSAGE_RUN_STARTED = 'run started'
MESSAGE_GO = 'Go!'
MESSAGE_STOP = 'Stop!'


class Notifier:
    """Outbound channel for run lifecycle messages."""

    def send(self, message_type, message, variables=None):
        raise NotImplementedError

    def run_started(self, tenant_id, project_id, run_id):
        self.send(MESSAGE_TYPE_RUN_STARTED, MESSAGE_RUN_STARTED, {
            'tenantId': str(tenant_id),
            'projectId': str(project_id),
            'runId': str(run_id),
        })

    def go(self, variables=None):
        self.send(MESSAGE_TYPE_GO, MESSAGE_GO, variables)

    def stop(self, variables=None):
        self.send(MESSAGE_TYPE_STOP, MESSAGE_STOP, variables)


def build_message(message_type, message, variables=None):
    return {
        'message_type': message_type,
        'message': message,
        'plugin_name': PLUGIN_NAME,
        'variables': dict(variables or {}),
        'timestamp': int(time.time()),
    }


def send_to_kafka(kafka_broker, topic, message, timeout=SEND_TIMEOUT_SECONDS):
    producer = KafkaProducer(bootstrap_servers=kafka_broker)
    try:
        # delivery errors only surface on the record future
        future = producer.send(topic, value=json.dumps(message).encode('utf-8'))
        producer.flush()
        future.get(timeout=timeout)
    finally:
        producer.close()


class KafkaNotifier(Notifier):

    def __init__(self, kafka_broker, topic=KAFKA_EVENT_TOPIC):
        self.kafka_broker = kafka_broker
        self.topic = topic

    def send(self, message_type, message, variables=None):
        payload = build_message(message_type, message, variables)
        try:
            send_to_kafka(self.kafka_broker, self.topic, payload)
        except KafkaError as e:
            logger.error('could not publish %s to %s on %s: %s',
                         message_type, self.topic, self.kafka_broker, e)
            return
        logger.info('published %s (%s) to %s', message_type, message, self.topic)


class LoggingNotifier(Notifier):
    """Writes messages to the log only; used when no broker is configured."""

    def send(self, message_type, message, variables=None):
        logger.info('%s: %s %s', message_type, message, dict(variables or {}))
