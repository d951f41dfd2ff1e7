#!/usr/bin/env python3
"""
测试资源监控

测试内容:
1. 单次采样的字段
2. 阈值告警和会话计数
3. 监控循环和诊断报告
4. 服务器启用监控时的启动和关闭

使用方法:
    python3 test_resource_monitor.py
"""

import asyncio
import os
import sys

# 添加当前目录到路径
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import ServerConfig
from proxy import Socks5Server
from resource_monitor import ResourceMonitor


def test_monitor_once():
    """测试单次采样"""
    print("\n=== 测试1: 单次采样 ===")

    monitor = ResourceMonitor(check_interval=1)
    result = monitor.monitor_once()

    for key in ('pid', 'memory_mb', 'cpu_percent', 'num_threads', 'num_fds',
                'connections', 'sessions', 'timestamp', 'warnings'):
        assert key in result, key
    assert result['pid'] == os.getpid()
    assert result['memory_mb'] > 0
    assert result['sessions'] == 0
    assert result['warnings'] == []
    assert len(monitor.history) == 1

    print("✓ 测试通过")


def test_thresholds():
    """测试阈值告警，会话数来自 session_counter"""
    print("\n=== 测试2: 阈值告警 ===")

    monitor = ResourceMonitor(
        session_counter=lambda: 7,
        thresholds={'memory_mb': 0, 'sessions': 5},
    )
    result = monitor.monitor_once()
    assert result['sessions'] == 7
    assert any(w.startswith("内存使用过高") for w in result['warnings']), result['warnings']
    assert any(w.startswith("活跃会话过多") for w in result['warnings']), result['warnings']

    report = monitor.generate_report()
    assert "资源监控诊断报告" in report
    assert "告警统计" in report

    print("✓ 测试通过")


def test_history_and_loop():
    """测试监控循环和历史记录上限"""
    print("\n=== 测试3: 监控循环 ===")

    assert ResourceMonitor().generate_report() == "没有历史数据"

    monitor = ResourceMonitor(check_interval=0.01, max_history=3)
    asyncio.run(monitor.monitor_loop(duration=0))
    assert len(monitor.history) == 1

    for _ in range(5):
        monitor.monitor_once()
    assert len(monitor.history) == 3

    report = monitor.generate_report()
    assert "检查次数: 3" in report

    print("✓ 测试通过")


def test_server_monitor():
    """测试服务器启用监控时会运行监控任务，关闭时将其取消"""
    print("\n=== 测试4: 服务器监控 ===")

    async def scenario():
        server = Socks5Server(ServerConfig(host='127.0.0.1', port=0, monitor_interval=0.05))
        assert server.monitor is not None
        await server.start()

        await asyncio.sleep(0.2)
        assert len(server.monitor.history) >= 2
        assert server.monitor.history[-1]['sessions'] == 0

        await asyncio.wait_for(server.close(), 5.0)
        assert not server.is_serving

        assert Socks5Server(ServerConfig(port=0)).monitor is None

    asyncio.run(scenario())
    print("✓ 测试通过")


def main():
    tests = [
        test_monitor_once,
        test_thresholds,
        test_history_and_loop,
        test_server_monitor,
    ]
    for test in tests:
        test()
    print("\n所有测试通过")


if __name__ == '__main__':
    main()
