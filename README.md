# contprof

Building blocks for continuous profiling. The package loads and validates
the scrape configuration, expands target groups into one scrape target per
profile type, runs scrape loops that fetch profiles over HTTP and hand them
to a profile store, keeps uploaded debug information in a filesystem bucket
with a local cache, and validates query requests.

## Installation

```
pip install .
```

To run the tests as well:

```
pip install .[test]
pytest
```

## Configuration (`contprof.config`)

```python
from contprof.config import load

cfg = load("""
scrape_configs:
  - job_name: 'app'
    scrape_interval: 10s
    static_configs:
      - targets: ['localhost:8080']
""")
job = cfg.scrape_configs[0]
print(job.job_name, job.scrape_timeout)
```

- `load(s)` parses YAML text and rejects unknown fields; `load_file(filename)`
  does the same for a file and joins relative file paths in the HTTP client
  settings with the file's directory.
- Every scrape job gets the default pprof profiles (`memory_total`,
  `block_total`, `goroutine_total`, `mutex_total`, `process_cpu`,
  `threadcreate_total`). Entries under `profiling_config.pprof_config`
  override or extend them; a missing `enabled` becomes `true` and a missing
  `path` takes the default path.
- A `scrape_timeout` of zero becomes the `scrape_interval`; a timeout larger
  than the interval is rejected, and so is a timeout below 2 seconds while
  `process_cpu` is enabled. Target addresses containing `/` are rejected.
- `Config.validate()` checks that a `debug_info` section with a bucket type
  and bucket config is present. `Config.to_yaml()` writes the configuration
  back out, with `Secret` values shown as `<secret>`.
- Any invalid configuration raises `ConfigError`.

The `debug_info` section itself is modelled in `contprof.debuginfo_config`
(`DebugInfoConfig`, `BucketConfig`, `CacheConfig`, `parse_debuginfo_config`,
`validate_debuginfo_config`, `new_cache`).

## Targets (`contprof.scrape_target`)

`targets_from_group(group, cfg)` expands a `StaticTargetGroup` into one
`Target` per address and enabled profile type, applying relabeling rules
(`replace`, `keep`, `drop`, `hashmod`, `labelmap`, `labeldrop`,
`labelkeep`) and adding default ports. `Target.url()` gives the URL to
scrape, including the `seconds` parameter for delta profiles.
`Target.health` reports a `TargetHealth` from the last scrape.

## Scraping (`contprof.scrape_loop`, `contprof.scrape_manager`)

`ScrapePool` runs a `ScrapeLoop` in a thread per target; each loop fetches
the profile with `TargetScraper` and passes it to the store's `write_raw`
method. `Manager` keeps one pool per job, takes new target sets from a
`queue.Queue` in `run()`, and reports targets in wire form through
`targets(state)` with a `TargetsState`. The store is any object with a
`write_raw(request)` method.

## Debug information (`contprof.debuginfo_store`)

`DebugInfoStore` stores uploaded debug info in a `FilesystemBucket` under
`<build id>/debuginfo` and copies fetched objects into a local cache
directory (`fetch_object_file`). Build IDs must be hex strings longer than
two characters (`validate_id`). `new_store(config)` builds a store from a
`DebugInfoConfig` with a `FILESYSTEM` bucket and cache. `DebugInfoClient`
uploads from any binary file-like object to a store in the same process.

## Other helpers

- `contprof.logger.new_logger(level, format, name)` returns a logger writing
  logfmt or JSON lines to standard error.
- `contprof.runutil.repeat(interval, stop_event, func)` calls a function on
  a fixed schedule until an event is set.
- `contprof.server_util` has `fallback_not_found` (a WSGI wrapper that hands
  404 responses to a fallback app), `default_code_to_level`, `should_log`
  and `origin_allowed` for CORS checks.
- `contprof.query_validate` holds the query request types (`QueryRequest`,
  `QueryRangeRequest`, `SingleProfile`, `MergeProfile`, `DiffProfile`,
  `ProfileDiffSelection`) whose `validate()` methods raise
  `QueryValidationError`.

## What the package does not do

There is no command-line program and no network server: nothing here
listens for RPC or HTTP requests. It has no profile storage or query
engine — query requests are only validated, not executed — and no
symbolization of debug information. Only filesystem buckets and caches are
supported, and targets come only from static target groups.