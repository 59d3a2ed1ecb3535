TOPICS = {
    "valuation_requests": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 604800000,
    },
    "valuation_stage_events": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 259200000,
    },
    "valuation_results": {
        "partitions": 6,
        "replication_factor": 3,
        "retention_ms": 2592000000,
    },
}
