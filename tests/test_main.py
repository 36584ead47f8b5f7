from finsync.main import build_parser


def test_pull_commands_take_last_write_wins():
    parser = build_parser()

    for command in ("pull", "sync", "restore"):
        assert parser.parse_args([command]).last_write_wins is False
        assert parser.parse_args([command, "--last-write-wins"]).last_write_wins is True


def test_queue_clear_flag():
    parser = build_parser()
    assert parser.parse_args(["queue"]).clear is False
    assert parser.parse_args(["queue", "--clear"]).clear is True
