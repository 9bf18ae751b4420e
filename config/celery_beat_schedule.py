# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Celery Beat schedule for periodic TrainingJob resync

The resync queues a reconciliation pass for every TrainingJob with no pass
queued or running, so objects whose change events were missed are still
picked up.
"""

from smoperator.config import settings

# Celery Beat schedule configuration
CELERY_BEAT_SCHEDULE = {
    'resync-training-jobs': {
        'task': 'smoperator.tasks.reconcile_tasks.resync_training_jobs_task',
        'schedule': settings.resync_interval,
        'options': {
            'expires': settings.resync_interval * 0.8,  # Expire before the next run to avoid overlap
        }
    },
}

# Timezone for the scheduler
CELERY_TIMEZONE = 'UTC'
