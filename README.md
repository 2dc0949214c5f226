# dtmcli

A client for a distributed transaction manager server. It lets a Python
service start global transactions and take part in them as a branch:

- **Saga**: a list of actions, each with a compensation (`dtmcli.saga.Saga`).
- **XA**: two-phase commit over database connections
  (`dtmcli.xa.xa_global_transaction`, `dtmcli.xa.xa_local_transaction`).
- **Reliable messages**: prepare, run local work, then submit
  (`dtmcli.msg.Msg`).
- **Workflows**: plain Python functions whose steps are recorded at the
  server so that a run can be resumed and rolled back
  (`dtmcli.workflow.core.Workflow`).

Branch barriers (`dtmcli.barrier.BranchBarrier`) guard branch handlers
against repeated requests, compensations that arrive without their action,
and actions that arrive after their compensation. They work on SQL
connections, Redis clients and MongoDB clients.

## Installing

```
pip install .
```

This installs `requests` and `pymysql`. The Redis and MongoDB barriers take a
client object you pass in (one with `eval`, or one with `start_session` and
item access to databases); install `redis` or `pymongo` yourself if you use
them.

## A saga

```python
from dtmcli.http import must_gen_gid
from dtmcli.saga import Saga

server = "http://localhost:36789/api/dtmsvr"
busi = "http://localhost:8081/api/busi"

saga = (
    Saga(server, must_gen_gid(server))
    .add(busi + "/TransOut", busi + "/TransOutRevert", {"amount": 30})
    .add(busi + "/TransIn", busi + "/TransInRevert", {"amount": 30})
)
saga.submit()
```

`set_concurrent()` lets the server run the steps at the same time, and
`add_branch_order(branch, pre_branches)` makes a step wait for others.

## A reliable message

```python
from dtmcli.msg import Msg

msg = Msg(server, must_gen_gid(server)).add(busi + "/TransIn", {"amount": 30})
msg.do_and_submit_db(busi + "/QueryPrepared", conn, lambda conn: debit(conn, 30))
```

The local work runs behind a barrier in one database transaction. If it
raises `FailureError` the message is aborted; any other error makes the
client ask the prepared-query URL what happened. The error is raised again
either way. `prepare`, `submit`, `add_topic` and `set_delay` are also
available for driving a message by hand.

## XA

```python
from dtmcli.xa import xa_global_transaction

def body(xa):
    xa.call_branch({"amount": 30}, busi + "/TransOutXa")
    xa.call_branch({"amount": 30}, busi + "/TransInXa")

xa_global_transaction(server, must_gen_gid(server), body)
```

The transaction is submitted when the function returns and aborted when it
raises. In the branch handler, `xa_local_transaction(query, conf, xa_func)`
runs `xa_func(conn, xa)` inside an XA branch described by a
`dtmcli.utils.DBConf`, and also handles the later commit and rollback
requests. MySQL connections are opened with `pymysql`; for other drivers
register an opener with `dtmcli.xa_base.register_connector(driver, connect)`.

## Barriers

```python
from dtmcli.barrier import barrier_from_query

barrier = barrier_from_query(request_query_string)
barrier.call(conn, lambda conn: debit(conn, 30))
```

`query_prepared`, `redis_query_prepared` and `mongo_query_prepared` answer
the server's query for a message; `redis_check_adjust_amount` adjusts a Redis
counter once per branch operation and refuses to take it below zero.

## Workflows

```python
from dtmcli.workflow.core import Workflow

def transfer(wf, data):
    wf.new_branch().on_rollback(
        lambda bb: wf.request("POST", busi + "/TransOutRevert", {"amount": 30})
    )
    wf.request("POST", busi + "/TransOut", {"amount": 30})

gid = must_gen_gid(server)
wf = Workflow("transfer", gid, dtm=server, query_prepared=busi + "/workflow/resume")
wf.process(transfer, b"")
```

Each branch may have one action (`request`, `do` or `do_xa`), one
`on_commit` and one `on_rollback` callback (`on_finish` sets both). A
`FailureError` from the function rolls back the branches in reverse order
and is raised again; other errors leave the workflow for the server to
retry.

## Errors

A branch reports its outcome through the HTTP status: 409 means failure and
leads to rollback, 425 means the work is still ongoing and will be retried.
In Python these surface as `dtmcli.consts.FailureError` and
`dtmcli.consts.OngoingError`; `DuplicatedError` marks a message whose work
was already decided. All are subclasses of `dtmcli.consts.DtmError`.
`dtmcli.http.result_to_http_json` maps a handler result back to a status
and body.

## What this package does not do

- It has no TCC transaction helper; only saga, XA, messages and workflows
  can be started.
- It has no workflow registry: there is no way to register a workflow by
  name and have it executed or resumed from a server callback. Build a
  `Workflow` and call `process` yourself.
- It speaks HTTP (and JSON-RPC for server calls) only; there is no gRPC
  client.
- It is a client only: it does not store transactions or run the server.

## Running the tests

```
pip install ".[test]"
pytest
```