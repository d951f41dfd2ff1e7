"""
资源监控模块 - 监控 SOCKS5 代理进程的资源使用情况

功能:
1. 采样本进程的内存、CPU、线程、文件描述符和网络连接数
2. 统计活跃会话数
3. 超过阈值时记录告警
4. 生成诊断报告

每个会话最多占用客户端、目标（或 BIND 对端、UDP 套接字）两个描述符，
描述符数持续增长而会话数不变通常意味着有套接字没有被关闭。
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Callable, Dict, List, Optional

import psutil

logger = logging.getLogger('socks-puppet-monitor')


class ResourceMonitor:
    """资源监控器"""

    DEFAULT_THRESHOLDS = {
        'memory_mb': 500,       # 内存阈值: 500MB
        'cpu_percent': 80,      # CPU 阈值: 80%
        'num_fds': 1000,        # 文件描述符阈值
        'connections': 1000,    # 连接数阈值
        'sessions': 500,        # 活跃会话阈值
    }

    def __init__(self, check_interval: float = 60,
                 session_counter: Optional[Callable[[], int]] = None,
                 thresholds: Optional[Dict[str, float]] = None,
                 max_history: int = 1000):
        """
        初始化资源监控器

        参数:
            check_interval: 检查间隔 (秒)
            session_counter: 返回当前活跃会话数的函数
            thresholds: 覆盖默认告警阈值
            max_history: 保留的历史记录条数
        """
        self.check_interval = check_interval
        self.session_counter = session_counter
        self.thresholds = dict(self.DEFAULT_THRESHOLDS)
        if thresholds:
            self.thresholds.update(thresholds)
        self.max_history = max_history
        self.history: List[Dict] = []
        self.process = psutil.Process()

    def get_process_stats(self) -> Optional[Dict]:
        """
        获取进程统计信息

        返回:
            Dict: 统计信息，无权读取时返回 None
        """
        proc = self.process
        try:
            with proc.oneshot():
                memory_info = proc.memory_info()
                if hasattr(proc, 'net_connections'):
                    connections = proc.net_connections(kind='inet')
                else:
                    connections = proc.connections(kind='inet')
                return {
                    'pid': proc.pid,
                    'memory_mb': memory_info.rss / 1024 / 1024,
                    'cpu_percent': proc.cpu_percent(interval=None),
                    'num_threads': proc.num_threads(),
                    'num_fds': proc.num_fds() if hasattr(proc, 'num_fds') else 0,
                    'connections': len(connections),
                    'sessions': self.session_counter() if self.session_counter else 0,
                }
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.debug(f"读取进程信息失败: {e}")
            return None

    def check_thresholds(self, stats: Dict) -> List[str]:
        """
        检查是否超过阈值

        参数:
            stats: 统计信息

        返回:
            List[str]: 告警信息列表
        """
        warnings = []

        if stats['memory_mb'] > self.thresholds['memory_mb']:
            warnings.append(f"内存使用过高: {stats['memory_mb']:.2f} MB > {self.thresholds['memory_mb']} MB")

        if stats['cpu_percent'] > self.thresholds['cpu_percent']:
            warnings.append(f"CPU 使用过高: {stats['cpu_percent']:.2f}% > {self.thresholds['cpu_percent']}%")

        if stats['num_fds'] > self.thresholds['num_fds']:
            warnings.append(f"文件描述符过多: {stats['num_fds']} > {self.thresholds['num_fds']}")

        if stats['connections'] > self.thresholds['connections']:
            warnings.append(f"连接数过多: {stats['connections']} > {self.thresholds['connections']}")

        if stats['sessions'] > self.thresholds['sessions']:
            warnings.append(f"活跃会话过多: {stats['sessions']} > {self.thresholds['sessions']}")

        return warnings

    def monitor_once(self) -> Dict:
        """
        执行一次监控检查

        返回:
            Dict: 监控结果
        """
        stats = self.get_process_stats()
        if stats is None:
            result = {'timestamp': datetime.now(), 'warnings': ['无法读取进程信息']}
        else:
            result = dict(stats, timestamp=datetime.now(), warnings=self.check_thresholds(stats))

        self.history.append(result)
        if len(self.history) > self.max_history:
            del self.history[:-self.max_history]
        return result

    def log_status(self, result: Dict):
        """记录一次监控结果"""
        if 'memory_mb' in result:
            logger.info(
                f"资源: 内存={result['memory_mb']:.1f}MB, CPU={result['cpu_percent']:.1f}%, "
                f"线程={result['num_threads']}, 描述符={result['num_fds']}, "
                f"连接={result['connections']}, 会话={result['sessions']}"
            )
        for warning in result['warnings']:
            logger.warning(f"资源告警: {warning}")

    async def monitor_loop(self, duration: Optional[float] = None):
        """
        持续监控

        参数:
            duration: 监控时长 (秒), None 表示直到任务被取消
        """
        logger.info(f"开始资源监控，检查间隔: {self.check_interval} 秒")
        start_time = time.monotonic()

        while True:
            self.log_status(self.monitor_once())

            if duration is not None and (time.monotonic() - start_time) >= duration:
                break

            await asyncio.sleep(self.check_interval)

    def generate_report(self) -> str:
        """
        生成诊断报告

        返回:
            str: 报告内容
        """
        samples = [h for h in self.history if 'memory_mb' in h]
        if not samples:
            return "没有历史数据"

        memory_values = [h['memory_mb'] for h in samples]
        fd_values = [h['num_fds'] for h in samples]
        session_values = [h['sessions'] for h in samples]

        report = []
        report.append("=" * 60)
        report.append("资源监控诊断报告")
        report.append("=" * 60)
        report.append(f"监控开始时间: {samples[0]['timestamp']}")
        report.append(f"监控结束时间: {samples[-1]['timestamp']}")
        report.append(f"检查次数: {len(samples)}")
        report.append("")
        report.append(f"内存: 最大 {max(memory_values):.2f} MB, 增长 {memory_values[-1] - memory_values[0]:.2f} MB")
        report.append(f"文件描述符: 最大 {max(fd_values)}, 增长 {fd_values[-1] - fd_values[0]}")
        report.append(f"活跃会话: 最大 {max(session_values)}, 当前 {session_values[-1]}")

        warning_counts = {}
        for h in self.history:
            for warning in h['warnings']:
                warning_type = warning.split(':')[0]
                warning_counts[warning_type] = warning_counts.get(warning_type, 0) + 1

        if warning_counts:
            report.append("")
            report.append("告警统计:")
            for warning_type, count in sorted(warning_counts.items(), key=lambda x: x[1], reverse=True):
                report.append(f"  {warning_type}: {count} 次")

        report.append("=" * 60)
        return "\n".join(report)
