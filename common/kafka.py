from common.settings import settings

TOPIC_PURCHASE_EVENTS = "purchase_events"

def get_producer():
    # Imported here so services that only write the outbox don't need librdkafka
    from confluent_kafka import Producer
    return Producer({"bootstrap.servers": settings.kafka_bootstrap, "enable.idempotence": True})
