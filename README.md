# marathon

This package provides workers for mass push-notification jobs. A job names an app, a push
service (`apns` or `gcm`), one or more comma-separated template names and
a context. The workers render the template that matches each user's locale,
falling back to `en`, and pass each message to a push producer. Redis holds
job progress, failed-batch counters and paused batches.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

You supply the Redis connection. Any client with the redis-py method
names will work, for example `redis.Redis(decode_responses=True)` from the
separately installed `redis` distribution. The package does not install a
Redis client itself.

## Modules

- `marathon.util` holds the data types `User`, `Template` and
  `BatchWorkerMessage`, and the `MessageError` exception.
  - `compress_users` turns users into JSON, compresses it with zlib and
    encodes it as base64.
  - `parse_process_batch_worker_message_array` reads
    `[jobId, appName, users]` back into a message.
  - `build_message_from_template` renders a template body as JSON. It fills
    `{{name}}` tags from the template defaults, then from the context.
  - `get_where_clause_from_filters` builds an SQL where clause. A `NOT`
    prefix on a key negates the filter, and comma-separated values expand.
  - `is_user_id_valid`, `get_time_offset_from_utc_in_seconds`,
    `get_push_db_table_name`, `build_topic_name` and
    `random_element_from_slice` are smaller helpers.
- `marathon.stage_status` provides `StageStatus`, which records a pipeline
  stage and its numbered sub-stages (`1.1`, `1.2`, and so on) as Redis
  hashes. `incr_progress` raises `StageStatusError` once the stage has
  reached its maximum.
- `marathon.queue` provides `Message` and `Producer`. `Producer.enqueue`
  adds a JSON message to the `queue:<name>` list. If `at` is a Unix time in
  the future, the message goes to the `schedule` sorted set instead.
- `marathon.jobs` provides the following:
  - the `Job` record, whose times are Unix seconds;
  - `JobStore`, an in-memory, thread-safe store of jobs, templates and
    status events;
  - the `PushProducer` protocol, with `send_apns_push` and
    `send_gcm_push`;
  - `JobNotFoundError`.
- `marathon.worker` provides `load_config`, `Config`, `StatsdClient` and
  `Worker`.
  - `load_config` reads a YAML file.
  - `Config` reads dotted, case-insensitive keys. `MARATHON_*` environment
    variables override values from the file.
  - `StatsdClient` sends DogStatsD counters and timings over UDP. Without
    it, counters are kept in memory.
  - `Worker` enqueues and schedules the work of each queue, stores control
    groups and reports health through `health_status`.
- `marathon.process_batch_worker` provides `ProcessBatchWorker`, which sends
  one batch of users to the push producer.
  - It does nothing for expired or stopped jobs.
  - It moves batches of paused or circuit-broken jobs to the
    `<jobId>-pausedjobs` list.
  - It counts failed batches and trips the circuit breaker when
    `workers.processBatch.maxBatchFailure` is reached.
  - When the last batch completes, it schedules a `job_completed_worker`
    message.
  - Failures raise `BatchProcessingError`.
- `marathon.resume_job_worker` provides `ResumeJobWorker`, which moves a
  job's paused batches back onto `process_batch_worker`. If the job is
  stopped, it drops them.

## Example

```python
from marathon.util import Template, User, build_message_from_template, compress_users
from marathon.util import parse_process_batch_worker_message_array

template = Template(
    body={"alert": "{{user_name}} just liked your {{object_name}}!"},
    defaults={"user_name": "Someone", "object_name": "village"},
)
print(build_message_from_template(template, {"user_name": "Camila"}))
# {"alert":"Camila just liked your village!"}

users = [User(user_id="u1", token="token", locale="en")]
payload = compress_users(users)
parsed = parse_process_batch_worker_message_array(
    ["6ba7b810-9dad-11d1-80b4-00c04fd430c8", "myapp", payload]
)
print(parsed.users[0].token)
```

To process a batch, build a `Worker` from a `Config`, a Redis client, a
`JobStore` and a push producer. Then pass a `Message` to
`ProcessBatchWorker(worker).process(message)`.

## Configuration

`load_config(path)` reads a YAML file into a `Config`. The keys it uses are:

- `workers.topicTemplate`: a `%s`/`%s` template for app and service.
- `workers.processBatch.maxBatchFailure`
- `workers.processBatch.maxUserFailureInBatch`
- `workers.processBatch.intervalToSendCompletedJob`: a duration such as
  `10m`.
- The `maxRetries` setting of each queue.

The defaults include `workers.statsd.host` `127.0.0.1:8125` and the prefix
`marathon.`.

## What this package does not do

- There is no command and no long-running process. Nothing here consumes
  the Redis queues. You call `process` with a `Message` yourself.
- There is no HTTP stats endpoint. `health_status` returns the health
  dictionary.
- Jobs and templates live only in the in-memory `JobStore`. No database
  storage is included.
- No push producer is included. You pass an object that implements
  `PushProducer`.
- `create_direct_batches_job` needs a DB-API push database connection.
- There are no workers here for the `csv_split_worker`,
  `create_batches_worker`, `direct_worker` and `job_completed_worker`
  queues. `Worker` only enqueues to them.
- `StageStatus` and `ProcessBatchWorker` send no e-mail when a circuit
  breaker trips. The event is logged instead.