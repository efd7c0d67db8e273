# services/producer.py

import json
import logging
import os
from kafka import KafkaProducer
from kafka.errors import KafkaError

logger = logging.getLogger(__name__)

def order_completed_topic():
    return os.getenv("ORDER_COMPLETED_TOPIC", "order_completed")

producer = None

def get_producer():
    global producer
    if producer is None:
        producer = KafkaProducer(
            bootstrap_servers=os.getenv("KAFKA_SERVERS", "localhost:9092"),
            key_serializer=lambda k: str(k).encode("utf-8"),
            value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8")
        )
    return producer

def publish_event(topic: str, payload: dict, key=None) -> bool:
    future = get_producer().send(topic, key=key, value=payload)
    try:
        record_metadata = future.get(timeout=10)  # blocks and waits for ack
        logger.info(f"[Kafka] Delivered to topic={record_metadata.topic} partition={record_metadata.partition} offset={record_metadata.offset}")
        return True
    except KafkaError as e:
        # the order is already stored; the nightly job picks the user up anyway
        logger.error(f"[Kafka] FAILED to deliver message to {topic}: {e}")
        return False

def order_completed_event(order) -> dict:
    return {
        "user_id": order.user_id,
        "order_id": order.id,
        "order_number": order.order_number,
        "amount": str(order.effective_amount),
        "completed_at": order.created_at.isoformat() if order.created_at else None,
    }

def publish_order_completed(order) -> bool:
    # keyed by user so one user's events stay ordered on a single partition
    return publish_event(order_completed_topic(), order_completed_event(order), key=order.user_id)
