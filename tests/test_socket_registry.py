from prototap.socket_registry import SocketRegistry


class Conn:
    def __init__(self, name, open_=True):
        self.name = name
        self.open = open_


def test_register_overwrites_same_url():
    reg = SocketRegistry()
    old, new = Conn("old"), Conn("new")
    reg.register("wss://a/ws", old)
    reg.register("wss://a/ws", new)
    assert len(reg) == 1
    assert reg.get("wss://a/ws") is new


def test_stale_unregister_keeps_new_connection():
    """旧连接的 close 不能把复用同一 url 的新连接删掉"""
    reg = SocketRegistry()
    old, new = Conn("old"), Conn("new")
    reg.register("wss://a/ws", old)
    reg.register("wss://a/ws", new)
    assert reg.unregister("wss://a/ws", old) is False
    assert "wss://a/ws" in reg
    assert reg.unregister("wss://a/ws", new) is True
    assert "wss://a/ws" not in reg


def test_select_in_insertion_order():
    reg = SocketRegistry()
    reg.register("ws://localhost/x", Conn("local"))
    reg.register("wss://a/ws", Conn("a", open_=False))
    reg.register("wss://b/ws", Conn("b"))
    reg.register("wss://c/ws", Conn("c"))
    picked = reg.select(lambda url, c: "localhost" not in url and c.open)
    assert picked[0] == "wss://b/ws"
    assert reg.select(lambda url, c: False) is None


def test_snapshot_and_iter_are_copies():
    reg = SocketRegistry()
    reg.register("wss://a/ws", Conn("a"))
    snap = reg.snapshot()
    snap.clear()
    assert len(reg) == 1
    for url in reg:
        reg.unregister(url, reg.get(url))
    assert len(reg) == 0
