"""
Warm pool management for the runner autoscaler.

Keeps a small number of ready-but-unassigned environments per template so a
scale-up can skip provisioning latency. Claims never block: a contended or
empty pool is a miss and the caller provisions directly.

A run of consecutive misses on an empty pool triggers aggressive warming:
the template's target is raised by `aggressive_warming_slots` until the next
replenishment fills it, and the replenisher is woken immediately.
"""

import threading
import uuid
import logging
from collections import defaultdict, deque
from typing import Dict, Any, Optional, List

from .clock import Clock, SystemClock
from .config import WarmPoolConfig
from .errors import AutoscalerError
from .models import WarmSlot
from .providers import ExecutionSubstrate, InstanceSpec, ProbeResult, LABEL_WARM, LABEL_TEMPLATE
from .retry import TimeoutCaller

logger = logging.getLogger(__name__)


class WarmPoolManager:
    """
    Per-template pools of pre-created environments.

    Each template has its own lock; the registry lock only guards creation
    of per-template structures and the statistics counters.
    """

    def __init__(self, substrate: ExecutionSubstrate, config: Optional[WarmPoolConfig] = None,
                 clock: Optional[Clock] = None, caller: Optional[TimeoutCaller] = None,
                 call_timeout: float = 10.0):
        self.substrate = substrate
        self.config = config or WarmPoolConfig()
        self.clock = clock or SystemClock()
        self._owns_caller = caller is None
        self.caller = caller or TimeoutCaller(default_timeout=call_timeout, max_workers=2,
                                              thread_name_prefix="warm-pool")

        self._lock = threading.RLock()
        self._pools: Dict[str, deque] = {}
        self._template_locks: Dict[str, threading.Lock] = {}
        self._stats = defaultdict(int)
        self._consecutive_misses: Dict[str, int] = defaultdict(int)
        self._boost: Dict[str, int] = {}

        self._running = False
        self._thread = None
        self._stop_event = threading.Event()
        self._wake = threading.Event()

    @property
    def templates(self) -> List[str]:
        return list(self.config.pool_sizes)

    def target_size(self, template: str) -> int:
        with self._lock:
            return self.config.pool_sizes.get(template, 0) + self._boost.get(template, 0)

    def claim(self, template: str) -> Optional[WarmSlot]:
        """
        Take a ready slot for the template without waiting.

        Expired slots found on the way are evicted. Returns None on a miss.
        """
        pool, lock = self._pool_for(template)
        if not lock.acquire(blocking=False):
            self._count("misses")
            return None

        expired: List[WarmSlot] = []
        claimed = None
        try:
            now = self.clock.now()
            while pool:
                slot = pool.popleft()
                if slot.age(now) >= self.config.max_age:
                    expired.append(slot)
                    continue
                claimed = slot
                break
        finally:
            lock.release()

        for slot in expired:
            self._evict(slot, "expired")

        if claimed is None:
            self._record_miss(template)
        else:
            with self._lock:
                self._stats["hits"] += 1
                self._consecutive_misses[template] = 0
            logger.info(f"Claimed warm slot {claimed.handle} (template '{template}')")

        self._wake.set()
        return claimed

    def replenish(self, template: Optional[str] = None) -> int:
        """Create slots until each pool reaches its target size; returns slots created"""
        created = 0
        for name in [template] if template else self.templates:
            pool, lock = self._pool_for(name)
            with lock:
                deficit = self.target_size(name) - len(pool)

            for _ in range(max(0, deficit)):
                if self._stop_event.is_set():
                    return created
                slot = self._create_slot(name)
                if slot is None:
                    break
                with lock:
                    pool.append(slot)
                created += 1
            else:
                with self._lock:
                    self._boost.pop(name, None)
        return created

    def health_check(self) -> int:
        """Evict slots past max age or failing their liveness probe; returns evictions"""
        evicted = 0
        now = self.clock.now()
        for name in self.templates:
            pool, lock = self._pool_for(name)
            with lock:
                slots = list(pool)

            # Slots stay claimable while they are checked
            for slot in slots:
                if slot.age(now) >= self.config.max_age:
                    reason = "expired"
                elif self.config.probe_slots and not self._probe(slot):
                    reason = "failed probe"
                else:
                    slot.last_probe_at = now
                    continue

                with lock:
                    if slot not in pool:
                        continue
                    pool.remove(slot)
                self._evict(slot, reason)
                evicted += 1
        return evicted

    def pool_size(self, template: str) -> int:
        pool, lock = self._pool_for(template)
        with lock:
            return len(pool)

    def start(self):
        """Start background replenishment"""
        with self._lock:
            if self._running:
                return

            self._running = True
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._replenish_loop, daemon=True,
                                            name="warm-pool-replenisher")
            self._thread.start()
            logger.info("Warm pool replenisher started")

    def stop(self, drain: bool = True, timeout: float = 5.0):
        """Stop background replenishment and optionally remove idle slots"""
        with self._lock:
            was_running = self._running
            self._running = False
            self._stop_event.set()
            self._wake.set()

        if was_running and self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)

        if drain:
            for name in list(self._pools):
                pool, lock = self._pool_for(name)
                with lock:
                    slots = list(pool)
                    pool.clear()
                for slot in slots:
                    self._evict(slot, "shutdown")

        if self._owns_caller:
            self.caller.shutdown()

        if was_running:
            logger.info("Warm pool replenisher stopped")

    def get_statistics(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
        return {
            "pools": {name: self.pool_size(name) for name in self.templates},
            "targets": {name: self.target_size(name) for name in self.templates},
            "hits": stats.get("hits", 0),
            "misses": stats.get("misses", 0),
            "created": stats.get("created", 0),
            "evicted": stats.get("evicted", 0),
            "create_failures": stats.get("create_failures", 0),
            "aggressive_warmings": stats.get("aggressive_warmings", 0),
        }

    def _replenish_loop(self):
        while not self._stop_event.is_set():
            try:
                self.health_check()
                self.replenish()
            except Exception as e:
                logger.error(f"Error in warm pool replenishment: {e}")

            self._wake.wait(self.config.replenish_interval)
            self._wake.clear()

    def _pool_for(self, template: str):
        with self._lock:
            if template not in self._pools:
                self._pools[template] = deque()
                self._template_locks[template] = threading.Lock()
            return self._pools[template], self._template_locks[template]

    def _record_miss(self, template: str) -> None:
        threshold = self.config.aggressive_warming_misses
        with self._lock:
            self._stats["misses"] += 1
            self._consecutive_misses[template] += 1
            misses = self._consecutive_misses[template]
            triggered = (threshold > 0 and misses >= threshold
                         and template in self.config.pool_sizes)
            if triggered:
                self._consecutive_misses[template] = 0
                self._boost[template] = self.config.aggressive_warming_slots
                self._stats["aggressive_warmings"] += 1

        if triggered:
            logger.info(f"{misses} consecutive warm pool misses for '{template}'; "
                        f"warming {self.config.aggressive_warming_slots} extra slot(s)")
        else:
            logger.debug(f"Warm pool miss for template '{template}'")

    def _create_slot(self, template: str) -> Optional[WarmSlot]:
        spec = InstanceSpec(
            name=f"warm-{template}-{uuid.uuid4().hex[:8]}",
            template=template,
            labels={LABEL_WARM: "true", LABEL_TEMPLATE: template},
        )
        try:
            handle = self.caller.call(self.substrate.create_instance, spec)
        except AutoscalerError as e:
            self._count("create_failures")
            logger.warning(f"Failed to create warm slot for template '{template}': {e}")
            return None

        self._count("created")
        logger.debug(f"Created warm slot {handle} (template '{template}')")
        return WarmSlot(template=template, handle=handle, created_at=self.clock.now())

    def _probe(self, slot: WarmSlot) -> bool:
        try:
            return self.caller.call(self.substrate.probe, slot.handle) != ProbeResult.UNHEALTHY
        except AutoscalerError as e:
            logger.warning(f"Probe failed for warm slot {slot.handle}: {e}")
            return False

    def _evict(self, slot: WarmSlot, reason: str) -> None:
        self._count("evicted")
        logger.info(f"Evicting warm slot {slot.handle} ({reason})")
        try:
            self.caller.call(self.substrate.remove_instance, slot.handle)
        except AutoscalerError as e:
            logger.warning(f"Failed to remove warm slot {slot.handle}: {e}")

    def _count(self, key: str) -> None:
        with self._lock:
            self._stats[key] += 1
