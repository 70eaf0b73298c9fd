# tfguardian

tfguardian runs the Terraform side of a pull-request workflow and keeps the
pull request informed. It is a library. Each command is a class: your CI job
creates it, passes in the clients it needs, and calls `process()`. A failure
raises an exception.

## Commands

- **Plan** (`tfguardian.plan.PlanCommand`). Runs `format` (check mode),
  `init`, `validate`, `plan` and `show` through a `TerraformClient`, in that
  order. It reads the plan file written under `child_path` and uploads it
  through a `StorageClient` to
  `guardian-plans/<owner>/<repo>/<pull request>/<path>`, with the plan's exit
  code stored in the metadata. When `is_github_actions` is set, it posts a
  "Running" comment at the start, updates that comment with the result, and
  wraps each step in a workflow log group. The result is one of no changes,
  successful, or failed. `get_message_body()` builds the comment and truncates
  long output so the comment stays within GitHub's 65536-character limit.
- **Plan status**
  (`tfguardian.workflows.plan_status_comments.PlanStatusCommentCommand`).
  Takes the results of the init and plan jobs and acts as follows:

  | Init and plan results | What it does |
  | --- | --- |
  | both `success` | posts a success comment |
  | either one `failure` | raises |
  | init `success`, plan `skipped` | posts a "planning skipped" comment |
  | any other `skipped` or `cancelled` | posts an "unable to determine" comment, then raises |
- **Remove comments**
  (`tfguardian.workflows.remove_comments.RemoveGuardianCommentsCommand`).
  Pages through the pull request's comments, 100 at a time. It deletes each
  comment that starts with the Guardian `plan` or `apply` prefix chosen in
  `for_commands`.
- **Validate permissions**
  (`tfguardian.workflows.validate_permissions.ValidatePermissionsCommand`).
  Raises unless the workflow actor's repository permission level is one of
  `allowed_permissions`.
- **IAM cleanup** (`tfguardian.iamcleanup.IAMCleaner`). Asks an asset
  inventory client for the IAM memberships that match a scope and query, then
  removes them through an IAM client. Memberships are grouped per resource
  and member. The groups run in parallel, up to `max_concurrent_requests`
  (default 10) at once. With `evaluate_condition=True`, it removes only the
  memberships whose condition evaluates to false.

Each command class has a `flags()` method. It returns a `FlagSet` that is
already set up with the command's options and its required-option checks.

## Condition expressions

`evaluate_condition_expression()` evaluates a small expression language. It
supports:

- comparison, arithmetic and logical operators
- `timestamp()`, `duration()`, `size()`, `int()`, `double()` and `string()`
- the string methods `startsWith`, `endsWith` and `contains`

These are evaluated against a `request` whose `time` is the given moment.
Only `request.time` may appear as a top-level operand.

```python
from datetime import datetime, timezone
from tfguardian.iamcleanup import evaluate_condition_expression

now = datetime(2024, 1, 1, tzinfo=timezone.utc)
evaluate_condition_expression('request.time < timestamp("2019-01-01T00:00:00Z")', now)  # False
```

`filter_by_evaluation()` keeps the memberships whose condition is false. It
logs and skips any membership whose condition cannot be evaluated.
`group_by_uri()` and `count_all()` are the grouping helpers that `IAMCleaner`
uses.

## Building blocks

`tfguardian.flags` provides a small flag parser (`FlagSet`, `FlagSection`).
It accepts these flag kinds: string, bool, int, int64, uint64, duration and
comma-separated string list. A flag can fall back to an environment variable.
All problems found after parsing are raised together as one `FlagError`, one
message per line.

Shared flag groups:

- `CommonFlags`: `-dir`.
- `GitHubFlags`: `-github-token`, or GitHub App id, installation id and
  private key, plus `-github-owner` and `-github-repo`.
- `RetryFlags`: `-retry-max-attempts` (default 3), `-retry-initial-delay`
  (default 2s) and `-retry-max-delay` (default 1m).

Durations use the `1h2m3s` notation:

```python
from tfguardian.flags import parse_duration, format_duration

parse_duration("10m")   # 600.0 seconds
format_duration(90)     # "1m30s"
```

`tfguardian.config` copies the GitHub Actions run context (`GitHubContext`)
into each command's settings: `PlanConfig`, `PlanStatusCommentsConfig` and
`ValidatePermissionsConfig`. It raises `ConfigError`, which lists every value
that is missing.

`tfguardian.command` holds the shared pieces:

- the client interfaces `GitHubClient`, `StorageClient` and `TerraformClient`
- the data classes `IssueComment` and `IssueCommentPage`
- the `Command` base class, which provides `out()`, `pipe()` for capturing
  output, and the `actions_group()` context manager

## Errors

Every error is an exception:

- `CommandError` for a command or client failure. It carries `exit_code`
  when a tool reported one.
- `FlagError` for bad flags.
- `ConfigError` for a missing run context.
- `ExpressionError` for condition expressions that cannot be compiled or
  evaluated.

## What it does not do

- No command-line program is installed.
- No working clients are included. The package has no GitHub API client, no
  cloud storage client, no asset inventory or IAM client, and no code that
  runs Terraform. You supply objects that implement the interfaces in
  `tfguardian.command` and `tfguardian.iamcleanup`.
- There is no apply command, no command that discovers Terraform entrypoint
  directories, and no command that runs arbitrary Terraform subcommands.
  Apply comments can be removed, but never created.
- Retry settings are parsed, but nothing in the package performs retries.

## Running the tests

Install the `test` extra, then run `pytest` from the project root.