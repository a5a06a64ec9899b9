# app/services/mqtt_bridge.py
from __future__ import annotations
import asyncio, json, queue, threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Callable, Tuple
import paho.mqtt.client as mqtt

from app.nexa.rules.storage import DeviceCommandSender, DeviceStateLookup
from app.nexa.rules.types import CommandResult

import logging

log = logging.getLogger("mqtt")

# handler(topic, payload_str) -> None
TopicHandler = Callable[[str, str], None]
# on_done(ok, detail) -> None, вызывается из потока публикатора
PublishDone = Callable[[bool, Optional[str]], None]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class MqttBridge:
    """
    Тонкая обёртка над paho-mqtt:
      - connect_async + loop_start, процесс не падает без брокера
      - исходящие сообщения идут через out_queue и один поток публикатора
      - входящие раздаются обработчикам по фильтру подписки
        (wildcard-ы разрешены), обработчики работают в сетевом потоке paho
    """

    def __init__(self, conf: dict):
        self.conf = conf
        self.client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=conf.get("client_id", ""),
            protocol=mqtt.MQTTv311,
        )

        self._handlers: Dict[str, TopicHandler] = {}  # фильтр подписки -> handler
        self._lock = threading.RLock()
        self._publisher: Optional[threading.Thread] = None

        def _on_connect(c, u, flags, rc, properties=None):
            log.info("[mqtt] connected rc=%s", rc)
            # после реконнекта заново подписываемся на все темы
            with self._lock:
                topics = list(self._handlers.keys())
            for t in topics:
                try:
                    self.client.subscribe(t, qos=self.qos)
                except Exception as e:
                    log.warning("[mqtt] resubscribe failed for %s: %s", t, e)

        self.client.on_connect = _on_connect
        self.client.on_message = self._on_message  # см. метод ниже

        self.base = conf.get("base_topic", "/devices").rstrip("/")
        if not self.base.startswith("/"):
            self.base = "/" + self.base
        self.qos = int(conf.get("qos", 0))
        self.retain = bool(conf.get("retain", False))
        self.out_queue: "queue.Queue[Optional[Tuple[str, Dict[str, Any], Optional[PublishDone]]]]" = queue.Queue()

    def topic(self, topic_like: str) -> str:
        """Относительные темы получают префикс base_topic."""
        if topic_like.startswith("/"):
            return topic_like
        return f"{self.base}/{topic_like}".replace("//", "/")

    @property
    def connected(self) -> bool:
        return self.client.is_connected()

    def connect(self):
        # не валим процесс, если брокер недоступен: paho сам переподключается
        try:
            self.client.connect_async(self.conf["host"], int(self.conf["port"]))
        except Exception as e:
            log.error("[mqtt] initial connect failed: %s", e)
        self.client.loop_start()  # неблокирующий цикл
        self._publisher = threading.Thread(target=self._publisher_loop, name="mqtt-publisher", daemon=True)
        self._publisher.start()

    def close(self):
        self.out_queue.put(None)
        try:
            self.client.disconnect()
        finally:
            self.client.loop_stop()
        if self._publisher is not None:
            self._publisher.join(timeout=2.0)

    def publish(
        self,
        topic_like: str,
        payload: Dict[str, Any],
        on_done: Optional[PublishDone] = None,
    ) -> str:
        """В очередь; on_done получит результат client.publish."""
        topic = self.topic(topic_like)
        self.out_queue.put((topic, payload, on_done))
        return topic

    def register_on_topic(self, topic: str, handler: TopicHandler) -> None:
        """topic может содержать wildcard-ы + / #"""
        topic = self.topic(topic)
        with self._lock:
            self._handlers[topic] = handler
        try:
            self.client.subscribe(topic, qos=self.qos)
            log.info("[mqtt] subscribed: %s", topic)
        except Exception as e:
            # если ещё не подключены, подпишемся в on_connect
            log.debug("[mqtt] subscribe deferred for %s: %s", topic, e)

    def unregister_on_topic(self, topic: str) -> None:
        topic = self.topic(topic)
        with self._lock:
            self._handlers.pop(topic, None)
        try:
            self.client.unsubscribe(topic)
            log.info("[mqtt] unsubscribed: %s", topic)
        except Exception as e:
            log.debug("[mqtt] unsubscribe failed for %s: %s", topic, e)

    def _on_message(self, client, userdata, msg):
        topic = msg.topic
        s = msg.payload.decode("utf-8", errors="ignore")

        with self._lock:
            handlers = [h for sub, h in self._handlers.items() if mqtt.topic_matches_sub(sub, topic)]
        for handler in handlers:
            try:
                handler(topic, s)
            except Exception:
                log.exception("[mqtt] handler error for %s", topic)

    def _publisher_loop(self):
        while True:
            item = self.out_queue.get()
            if item is None:
                return
            topic, payload, on_done = item
            try:
                info = self.client.publish(topic, json.dumps(payload), qos=self.qos, retain=self.retain)
                ok = info.rc == mqtt.MQTT_ERR_SUCCESS
                detail = None if ok else f"publish failed: {mqtt.error_string(info.rc)}"
                log.debug("[mqtt] -> %s %s rc=%s", topic, payload, info.rc)
            except Exception as e:
                ok, detail = False, f"publish failed: {e}"
                log.error("publish error: %s", e)
            if on_done is not None:
                try:
                    on_done(ok, detail)
                except Exception:
                    log.exception("[mqtt] publish callback error for %s", topic)


# ======================================================================
# устройства через MQTT
# ======================================================================

def _parse_state_payload(s: str) -> Tuple[Optional[str], Any]:
    """
    Принимаем {"home_id": "H1", "state": "on"}, {"homeId": ..., "value": ...}
    или просто значение ("on"). Возвращает (home_id, state).
    """
    try:
        j = json.loads(s)
    except ValueError:
        return None, s.strip()
    if isinstance(j, dict):
        home_id = j.get("home_id") or j.get("homeId")
        state = j.get("state", j.get("value"))
        return (str(home_id) if home_id else None), state
    return None, j


class MqttDeviceCommands(DeviceCommandSender, DeviceStateLookup):
    """
    Команды устройствам через MQTT.

    команда    -> {base}/{device_id}/controls/{command}/on
    состояние <- {base}/+/state  (кешируется для условий device_state
                                  и уходит дальше как device:state-change)
    Результат команды = результат client.publish у брокера; устройство
    подтверждает выполнение, публикуя новое состояние.
    """

    def __init__(self, bridge: MqttBridge, *, on_state: Optional[Callable[[Optional[str], str, Any], Any]] = None):
        self._bridge = bridge
        self._on_state = on_state
        self._states: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def attach(self) -> None:
        self._bridge.register_on_topic("+/state", self._handle_state)

    def detach(self) -> None:
        self._bridge.unregister_on_topic("+/state")

    async def send(self, device_id: str, command: str, parameters: Dict[str, Any]) -> CommandResult:
        if not self._bridge.connected:
            return CommandResult(success=False, detail="mqtt broker not connected")

        loop = asyncio.get_running_loop()
        done: "asyncio.Future[Tuple[bool, Optional[str]]]" = loop.create_future()

        def _resolve(ok: bool, detail: Optional[str]) -> None:
            # future мог быть отменён по таймауту исполнителя
            if not done.done():
                done.set_result((ok, detail))

        def _on_done(ok: bool, detail: Optional[str]) -> None:
            loop.call_soon_threadsafe(_resolve, ok, detail)

        topic = self._bridge.publish(
            f"{device_id}/controls/{command}/on",
            {
                "command": command,
                "parameters": parameters,
                "metadata": {"timestamp": _now_iso(), "source": "nexa-automation"},
            },
            on_done=_on_done,
        )
        ok, detail = await done
        if not ok:
            return CommandResult(success=False, detail=f"{topic}: {detail}")
        return CommandResult(success=True, detail=f"published to {topic}")

    async def get_state(self, device_id: str) -> Optional[Any]:
        with self._lock:
            return self._states.get(device_id)

    def _handle_state(self, topic: str, payload: str) -> None:
        # {base}/<device_id>/state
        parts = topic.rstrip("/").split("/")
        if len(parts) < 2:
            return
        device_id = parts[-2]
        home_id, state = _parse_state_payload(payload)

        with self._lock:
            self._states[device_id] = state
        log.debug("[mqtt] state %s=%r (home=%s)", device_id, state, home_id)

        if self._on_state is not None:
            self._on_state(home_id, device_id, state)
